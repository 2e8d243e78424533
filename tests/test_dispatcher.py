"""Tests for concurrent per-instance probe dispatch."""

import threading
import time

from yardcheck.config import DEFAULT_INSTANCES
from yardcheck.core.dispatcher import ProbeResult, all_ok, dispatch, failure_summary


def test_results_sorted_by_label_regardless_of_completion_order(client):
    """C finishes first and A last, yet results come back A, B, C."""
    finished = []
    lock = threading.Lock()
    delays = {"A": 0.15, "B": 0.08, "C": 0.0}

    def probe(_client, inst):
        time.sleep(delays[inst.label])
        with lock:
            finished.append(inst.label)
        return True, ""

    results = dispatch(client, list(reversed(DEFAULT_INSTANCES)), probe)

    assert finished[0] == "C"
    assert [r.label for r in results] == ["A", "B", "C"]
    assert all_ok(results)


def test_one_result_per_instance_and_failures_do_not_cancel_others(client):
    calls = []

    def probe(_client, inst):
        calls.append(inst.label)
        if inst.label == "B":
            return False, "boom"
        return True, ""

    results = dispatch(client, DEFAULT_INSTANCES, probe)

    assert sorted(calls) == ["A", "B", "C"]
    assert results == [
        ProbeResult("A", True, ""),
        ProbeResult("B", False, "boom"),
        ProbeResult("C", True, ""),
    ]
    assert not all_ok(results)


def test_raising_probe_becomes_failed_result(client):
    def probe(_client, inst):
        if inst.label == "A":
            raise RuntimeError("channel reset")
        return True, ""

    results = dispatch(client, DEFAULT_INSTANCES, probe)

    assert results[0].label == "A"
    assert not results[0].ok
    assert "channel reset" in results[0].message
    assert results[1].ok and results[2].ok


def test_stagger_delays_each_probe_by_its_index(client):
    sleeps = []
    lock = threading.Lock()

    def fake_sleep(seconds):
        with lock:
            sleeps.append(seconds)

    dispatch(client, DEFAULT_INSTANCES, lambda c, i: (True, ""), stagger=3, sleep=fake_sleep)

    assert sorted(sleeps) == [3, 6]


def test_empty_instance_set_yields_no_results(client):
    assert dispatch(client, [], lambda c, i: (True, "")) == []


def test_failure_summary_lists_failed_labels_only():
    results = [
        ProbeResult("A", False, "not active"),
        ProbeResult("B", True),
        ProbeResult("C", False, "exit 1"),
    ]
    assert failure_summary(results) == "[A] not active | [C] exit 1"
