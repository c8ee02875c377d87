import gc
import threading

from core.locks import OrganizationLocks


def test_same_organization_shares_one_lock_while_held():
    locks = OrganizationLocks()
    with locks.hold("org-a"):
        assert locks._lock_for("org-a") is locks._lock_for("org-a")
        assert locks._lock_for("org-a") is not locks._lock_for("org-b")
        assert len(locks) >= 1


def test_released_locks_are_dropped_from_the_registry():
    locks = OrganizationLocks()
    for index in range(100):
        with locks.hold(f"org-{index}"):
            pass
    gc.collect()
    assert len(locks) == 0


def test_hold_serializes_one_organization():
    locks = OrganizationLocks()
    inside = []
    overlaps = []

    def worker():
        for _ in range(50):
            with locks.hold("org-a"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert overlaps == []
