"""
FocusMochi — Latest-Value Channel Tests
=======================================
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mochi_watch import ChannelClosed, watch_channel


def test_initial_value_counts_as_seen():
    tx, rx = watch_channel(0)
    assert rx.borrow() == 0
    assert rx.has_changed() is False
    assert rx.changed(timeout=0.01) is False


def test_send_marks_changed_and_borrow_clears_it():
    tx, rx = watch_channel(0)
    assert tx.send(1) is True
    assert rx.has_changed() is True
    assert rx.changed(timeout=0.01) is True
    assert rx.borrow() == 1
    assert rx.has_changed() is False


def test_intermediate_values_are_dropped():
    tx, rx = watch_channel(0)
    for i in range(1, 6):
        tx.send(i)
    assert rx.borrow() == 5
    assert rx.has_changed() is False


def test_every_receiver_sees_latest():
    tx, rx1 = watch_channel("a")
    rx2 = tx.subscribe()
    tx.send("b")
    assert rx1.borrow() == "b"
    assert rx2.borrow() == "b"


def test_late_subscriber_has_seen_current_value():
    tx, rx = watch_channel(0)
    tx.send(7)
    late = tx.subscribe()
    assert late.has_changed() is False
    assert late.borrow() == 7


def test_send_fails_without_receivers():
    tx, rx = watch_channel(0)
    del rx
    assert tx.receiver_count() == 0
    assert tx.send(1) is False
    assert tx.borrow() == 0


def test_send_fails_after_close():
    tx, rx = watch_channel(0)
    tx.close()
    assert tx.send(1) is False
    assert tx.is_closed() is True


def test_close_wakes_waiting_receiver():
    tx, rx = watch_channel(0)
    result = {}

    def waiter():
        try:
            rx.changed()
        except ChannelClosed:
            result["closed"] = True

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    tx.close()
    t.join(timeout=2.0)
    assert result.get("closed") is True


def test_pending_value_survives_close():
    tx, rx = watch_channel(0)
    tx.send(3)
    tx.close()
    assert rx.changed(timeout=0.01) is True
    assert rx.borrow() == 3
    with pytest.raises(ChannelClosed):
        rx.changed(timeout=0.01)


def test_changed_wakes_on_send_from_other_thread():
    tx, rx = watch_channel(0)

    def sender():
        time.sleep(0.05)
        tx.send(42)

    t = threading.Thread(target=sender)
    t.start()
    assert rx.changed(timeout=2.0) is True
    assert rx.borrow() == 42
    t.join()
