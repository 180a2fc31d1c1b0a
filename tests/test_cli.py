"""Command-line entry point tests with discovery patched out."""
from __future__ import annotations

import contextlib
import io
import json
import unittest
from unittest.mock import patch

from konnect import cli
from konnect.models import ConnectionRecord


class CliTest(unittest.TestCase):
    def test_scan_json_lists_discovered_consoles(self) -> None:
        calls = []

        async def _fake_discover(timeout, *, config):
            calls.append((timeout, config))
            return [ConnectionRecord.discovered("192.168.1.50", "jtag")]

        out = io.StringIO()
        with patch("konnect.cli.discover", _fake_discover), contextlib.redirect_stdout(out):
            code = cli.main(["scan", "--json", "--timeout", "0.5", "--scan-frequency", "0.25"])

        self.assertEqual(code, 0)
        payload = json.loads(out.getvalue())
        self.assertEqual(payload[0]["address"], "192.168.1.50")
        timeout, config = calls[0]
        self.assertEqual(timeout, 0.5)
        self.assertEqual(config.scan_frequency, 0.25)

    def test_invalid_option_is_reported_as_usage_error(self) -> None:
        err = io.StringIO()
        with contextlib.redirect_stderr(err), self.assertRaises(SystemExit) as ctx:
            cli.main(["scan", "--bridged-subnet", "not-a-subnet"])

        self.assertEqual(ctx.exception.code, 2)
        self.assertIn("error", err.getvalue())


if __name__ == "__main__":
    unittest.main()
