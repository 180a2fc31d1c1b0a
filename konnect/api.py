from __future__ import annotations
import asyncio, contextlib, logging, time
from typing import Any, Dict, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query, HTTPException

from konnect.models import ConnectionHistory, ConnectionState, NotificationHub
from konnect.scanner import ConsoleScanner, ScannerConfig

logger = logging.getLogger("konnect.api")

_hub = NotificationHub()
_history = ConnectionHistory()
_history.attach(_hub)
_scanner: Optional[ConsoleScanner] = None
# Start/stop requests run one at a time so only one scanner ever owns the socket.
_scanner_lock = asyncio.Lock()


@contextlib.asynccontextmanager
async def _lifespan(_: FastAPI):
    yield
    if _scanner is not None:
        await _scanner.stop()


app = FastAPI(title="Konnect API", version="0.1.0", lifespan=_lifespan)


def _config_dict(config: ScannerConfig) -> Dict[str, Any]:
    return {
        "scan_frequency": config.scan_frequency,
        "disconnect_timeout": config.disconnect_timeout,
        "remove_on_disconnect": config.remove_on_disconnect,
        "bridged_subnet": config.bridged_subnet,
        "probe_port": config.probe_port,
    }


def _status_payload(status: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": status}
    if _scanner is not None:
        payload["subnets"] = _scanner.subnet_ranges
        payload["connections"] = len(_scanner.registry)
        payload["config"] = _config_dict(_scanner.config)
    return payload


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.get("/scanner/status")
async def scanner_status():
    if _scanner is None:
        return {"status": "idle"}
    return _status_payload("running" if _scanner.scanning else "stopped")


@app.post("/scanner/start")
async def start(
    scan_frequency: Optional[float] = Query(None, gt=0, description="Seconds between probe/monitor cycles"),
    disconnect_timeout: Optional[float] = Query(None, gt=0, description="Seconds of silence before a console is offline"),
    remove_on_disconnect: Optional[bool] = Query(None, description="Drop offline consoles automatically"),
    bridged_subnet: Optional[str] = Query(None, description="Bridged subnet prefix, e.g. 192.168.137"),
):
    async with _scanner_lock:
        return await _start_locked(scan_frequency, disconnect_timeout, remove_on_disconnect, bridged_subnet)


async def _start_locked(
    scan_frequency: Optional[float],
    disconnect_timeout: Optional[float],
    remove_on_disconnect: Optional[bool],
    bridged_subnet: Optional[str],
) -> Dict[str, Any]:
    global _scanner
    if _scanner is not None and _scanner.scanning:
        return _status_payload("already-running")

    overrides = {
        key: value
        for key, value in {
            "scan_frequency": scan_frequency,
            "disconnect_timeout": disconnect_timeout,
            "remove_on_disconnect": remove_on_disconnect,
            "bridged_subnet": bridged_subnet,
        }.items()
        if value is not None
    }
    try:
        config = ScannerConfig.from_env(**overrides)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid scanner configuration: {exc}")

    # A restarted scanner keeps the roster gathered so far.
    registry = _scanner.registry if _scanner is not None else None
    scanner = ConsoleScanner(config, registry=registry, hub=_hub)
    await scanner.start()
    if not scanner.scanning:
        raise HTTPException(status_code=503, detail="Unable to open the discovery socket")
    _scanner = scanner
    return _status_payload("started")


@app.post("/scanner/stop")
async def stop():
    async with _scanner_lock:
        if _scanner is not None and _scanner.scanning:
            await _scanner.stop()
            return {"status": "stopped"}
        return {"status": "idle"}


@app.get("/connections")
async def connections(state: Optional[str] = Query(None, description="online, offline or none")):
    if _scanner is None:
        return []
    records = _scanner.registry.snapshot()
    if state:
        try:
            wanted = ConnectionState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown state {state!r}")
        records = [record for record in records if record.state is wanted]
    return [record.to_dict() for record in sorted(records, key=lambda r: r.address)]


@app.get("/connections/{address}")
async def connection(address: str):
    record = _scanner.registry.get(address) if _scanner is not None else None
    if record is None:
        raise HTTPException(status_code=404, detail=f"No connection for {address}")
    return record.to_dict()


@app.post("/connections/purge")
async def purge():
    if _scanner is None:
        return {"purged": 0}
    return {"purged": _scanner.purge_list()}


@app.get("/events/history")
async def history(limit: int = Query(100, ge=1, le=1000)):
    return [event.to_dict() for event in _history.recent(limit)]


@app.websocket("/events")
async def events(ws: WebSocket):
    # Subscribe before accepting so nothing published after the handshake is missed.
    queue = _hub.subscribe_queue(maxsize=256)
    await ws.accept()

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await ws.send_json(event.to_dict())

    async def _drain() -> None:
        while True:
            await ws.receive_text()

    tasks = [asyncio.create_task(_pump()), asyncio.create_task(_drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("event stream ended with error: %s", exc)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        _hub.unsubscribe_queue(queue)
