import threading

import pytest

from homelab_ca.common.errors import StateInconsistencyError
from homelab_ca.common.models import Tier
from homelab_ca.common.utils import utc_now
from homelab_ca.storage.ledger import INITIAL_SERIAL, SerialLedger


@pytest.fixture
def ledger(tmp_path):
    ledger = SerialLedger(Tier.INTERMEDIATE, tmp_path / "intermediate-ca")
    ledger.initialize()
    return ledger


def test_fresh_ledger_starts_at_1000(ledger):
    assert ledger.peek() == INITIAL_SERIAL == 1000
    assert ledger.next_serial() == 1000
    assert ledger.next_serial() == 1001
    assert ledger.serial_path.read_text().strip() == "1002"
    assert ledger.entries() == []


def test_initialize_does_not_reset(ledger):
    ledger.next_serial()
    ledger.next_serial()
    ledger.initialize()
    assert ledger.peek() == 1002


def test_record_appends_in_order(ledger):
    now = utc_now()
    for name in ("a.test", "b.test", "a.test"):
        ledger.record(ledger.next_serial(), name, now)

    entries = ledger.entries()
    assert [e.serial for e in entries] == [1000, 1001, 1002]
    assert all(e.status == "valid" for e in entries)
    assert [e.serial for e in ledger.history("a.test")] == [1000, 1002]
    assert ledger.find(1001).subject_name == "b.test"
    assert ledger.find(999) is None


def test_duplicate_serial_rejected(ledger):
    now = utc_now()
    ledger.record(1000, "a.test", now)
    with pytest.raises(StateInconsistencyError, match="already recorded"):
        ledger.record(1000, "b.test", now)


def test_corrupt_serial_file(ledger):
    ledger.serial_path.write_text("not-a-number\n")
    with pytest.raises(StateInconsistencyError, match="corrupt"):
        ledger.next_serial()


def test_serial_below_floor(ledger):
    ledger.serial_path.write_text("12\n")
    with pytest.raises(StateInconsistencyError, match="below 1000"):
        ledger.peek()


def test_concurrent_serials_are_unique(ledger):
    got = []
    got_lock = threading.Lock()

    def worker():
        for _ in range(10):
            serial = ledger.next_serial()
            with got_lock:
                got.append(serial)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(got) == list(range(1000, 1040))


def test_separate_instances_share_the_counter(ledger):
    other = SerialLedger(Tier.INTERMEDIATE, ledger.directory)
    assert ledger.next_serial() == 1000
    assert other.next_serial() == 1001
