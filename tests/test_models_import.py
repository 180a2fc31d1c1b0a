"""Simple smoke test to ensure the models import and construct correctly."""
from konnect.models import ConnectionHistory, ConnectionRecord, ConnectionState, ConnectionType, NotificationHub


def test_imports():
    record = ConnectionRecord.discovered("192.168.1.50", "jtag")
    hub = NotificationHub()
    history = ConnectionHistory()
    assert record.state is ConnectionState.ONLINE
    assert record.connection_type is ConnectionType.LAN
    assert record.first_seen == record.last_seen
    assert history.last() is None
    assert callable(hub.publish)


if __name__ == "__main__":
    test_imports()
    print("models import smoke test: OK")
