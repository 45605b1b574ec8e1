import threading

import pytest

from attsync.codec import CMD_CONNECT, CMD_GET_USERS, encode_punch_record
from attsync.models import DeviceDescriptor
from attsync.orchestrator import SyncOrchestrator, failure_kind
from attsync.errors import ConnectionRefused, MalformedFrameError, PersistenceConflict

from conftest import make_users, punch
from fake_terminal import FakeTerminal


@pytest.fixture
def fleet(ledger, network):
    ledger.map_device_user(None, "101", "EMP-001")
    ledger.map_device_user(None, "102", "EMP-002")
    terminals = {}
    for n, name in enumerate("ABC", start=1):
        host = f"10.0.1.{n}"
        terminals[name] = network.add(host, FakeTerminal(
            users=make_users("101", "102"),
            punches=[punch("101", n * 10), punch("102", n * 10 + 5)],
            serial=f"SN-{name}"))
        ledger.register_device(f"gate-{name}", host, 4370)
    return terminals


def test_failure_kind():
    assert failure_kind(ConnectionRefused("x")) == "DeviceUnreachable"
    assert failure_kind(MalformedFrameError("x")) == "ProtocolError"
    assert failure_kind(PersistenceConflict("x")) == "PersistenceError"
    assert failure_kind(KeyError("x")) == "KeyError"


def test_one_device_down_does_not_stop_the_rest(ledger, network, fleet):
    fleet["B"].refuse = True
    orch = SyncOrchestrator(ledger, transport=network.transport)

    results = orch.sync_all()

    assert [r.device_id for r in results] == ["gate-A", "gate-B", "gate-C"]
    a, b, c = results
    assert a.success and c.success
    assert not b.success
    assert b.failure == "DeviceUnreachable"
    assert ledger.count_events("gate-A") == 2
    assert ledger.count_events("gate-B") == 0
    assert ledger.count_events("gate-C") == 2
    assert ledger.get_device("gate-A").last_successful_sync is not None
    assert ledger.get_device("gate-B").last_successful_sync is None
    assert network.open_sockets == 0


def test_resync_counts_only_new_punches(ledger, network, terminal):
    ledger.map_device_user(None, "101", "EMP-001")
    ledger.map_device_user(None, "102", "EMP-002")
    descriptor = ledger.register_device("gate-1", "10.0.0.5", 4370)
    orch = SyncOrchestrator(ledger, transport=network.transport)

    # the first punch was already ingested by an earlier run
    terminal.punches, later = terminal.punches[:1], terminal.punches[1:]
    assert orch.sync_devices([descriptor])[0].inserted == 1
    terminal.punches.extend(later)

    result = orch.sync_devices([descriptor])[0]
    assert result.success
    assert result.users_fetched == 2
    assert (result.fetched, result.inserted, result.duplicates, result.unmapped) == (3, 2, 1, 0)
    assert result.device_info.serial_number == terminal.serial
    assert ledger.count_events("gate-1") == 3
    assert terminal.enabled


def test_unmapped_users_are_reported(ledger, network, terminal):
    ledger.map_device_user(None, "101", "EMP-001")
    descriptor = ledger.register_device("gate-1", "10.0.0.5", 4370)

    result = SyncOrchestrator(ledger, transport=network.transport).sync_devices([descriptor])[0]

    assert result.success
    assert result.unmapped_user_ids == ["102"]
    assert (result.inserted, result.unmapped) == (2, 1)


def test_protocol_error_is_isolated(ledger, network, fleet):
    fleet["A"].reject.add(CMD_GET_USERS)
    results = SyncOrchestrator(ledger, transport=network.transport).sync_all()

    assert results[0].failure == "ProtocolError"
    assert results[1].success and results[2].success
    assert fleet["A"].enabled
    assert network.open_sockets == 0


def test_malformed_records_are_counted(ledger, network):
    ledger.map_device_user(None, "101", "EMP-001")
    raw = [encode_punch_record(punch("101", 0)), b'\x00' * 12, encode_punch_record(punch("101", 120))]
    network.add("10.0.0.8", FakeTerminal(punches=raw))
    descriptor = ledger.register_device("gate-8", "10.0.0.8", 4370)

    result = SyncOrchestrator(ledger, transport=network.transport).sync_devices([descriptor])[0]

    assert result.success
    assert result.malformed == 1
    assert result.inserted == 2


def test_ledger_failure_is_reported(ledger, network, terminal):
    # never registered, so the last-sync update has nothing to update
    descriptor = DeviceDescriptor(device_id="ghost", host="10.0.0.5")
    result = SyncOrchestrator(ledger, transport=network.transport).sync_devices([descriptor])[0]
    assert not result.success
    assert result.failure == "PersistenceError"
    assert terminal.open_sockets == 0


def test_empty_fleet(ledger):
    assert SyncOrchestrator(ledger).sync_devices([]) == []


def test_cancel_before_later_devices_start(ledger, network, fleet):
    cancel = threading.Event()

    def stop(cmd, terminal):
        if cmd == CMD_GET_USERS:
            cancel.set()
    fleet["A"].on_command = stop

    orch = SyncOrchestrator(ledger, transport=network.transport, max_workers=1)
    results = orch.sync_all(cancel)

    assert [r.failure for r in results] == ["Cancelled", "Cancelled", "Cancelled"]
    assert fleet["A"].enabled
    assert fleet["B"].count(CMD_CONNECT) == 0
    assert fleet["C"].count(CMD_CONNECT) == 0
    assert ledger.count_events() == 0
    assert network.open_sockets == 0


def test_cancel_mid_run_leaves_no_device_disabled(ledger, network, fleet):
    cancel = threading.Event()

    def stop(cmd, terminal):
        if cmd == CMD_GET_USERS:
            cancel.set()
    for t in fleet.values():
        t.on_command = stop

    results = SyncOrchestrator(ledger, transport=network.transport, max_workers=3).sync_all(cancel)

    assert len(results) == 3
    assert all(r.failure in (None, "Cancelled") for r in results)
    assert all(t.enabled for t in fleet.values())
    assert network.open_sockets == 0


def test_cancel_method_stops_the_current_run(ledger, network, fleet):
    orch = SyncOrchestrator(ledger, transport=network.transport, max_workers=1)

    def stop(cmd, terminal):
        if cmd == CMD_GET_USERS:
            orch.cancel()
    fleet["A"].on_command = stop

    results = orch.sync_all()
    assert results[0].failure == "Cancelled"
    assert results[2].failure == "Cancelled"

    # a fresh run is not affected by the previous cancellation
    fleet["A"].on_command = None
    assert all(r.success for r in orch.sync_all())


def test_cancel_before_run_starts_is_honoured(ledger, network, fleet):
    orch = SyncOrchestrator(ledger, transport=network.transport)
    orch.cancel()

    results = orch.sync_all()

    assert [r.failure for r in results] == ["Cancelled", "Cancelled", "Cancelled"]
    assert all(t.opened == 0 for t in fleet.values())
    assert ledger.count_events() == 0


def test_same_punch_from_two_workers_is_stored_once(ledger, network):
    # two terminals registered under one device id report the same punch
    ledger.map_device_user(None, "101", "EMP-001")
    for host in ("10.0.2.1", "10.0.2.2"):
        network.add(host, FakeTerminal(users=make_users("101"), punches=[punch("101", 0)]))
    descriptors = [DeviceDescriptor(device_id="gate-shared", host=h) for h in ("10.0.2.1", "10.0.2.2")]
    ledger.register_device("gate-shared", "10.0.2.1", 4370)

    results = SyncOrchestrator(ledger, transport=network.transport).sync_devices(descriptors)

    assert all(r.success for r in results)
    assert sorted(r.inserted for r in results) == [0, 1]
    assert sum(r.duplicates for r in results) == 1
    assert ledger.count_events("gate-shared") == 1
