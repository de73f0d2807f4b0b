import io

import pytest

from python.guestprof.aggregate import SampleTable
from python.guestprof.errors import ProfilerError
from python.guestprof.output import format_folded, leaf_counts, summarise, write_folded


@pytest.mark.parametrize("k", [1, 3, 250])
def test_recording_same_signature_k_times(k):
    table = SampleTable()
    for _ in range(k):
        table.record("main;run;step")
    assert table.count("main;run;step") == k
    assert table.drain() == [("main;run;step", k)]


def test_distinct_signatures_sum_to_total():
    table = SampleTable()
    recordings = ["a", "a;b", "a", "c", "a;b", "a;b;c", "a"]
    for sig in recordings:
        table.record(sig)
    entries = table.drain()
    assert len(entries) == 4
    assert sum(count for _, count in entries) == len(recordings)
    assert dict(entries) == {"a": 3, "a;b": 2, "c": 1, "a;b;c": 1}


def test_table_drains_exactly_once():
    table = SampleTable()
    table.record("main")
    table.drain()
    assert table.drained
    with pytest.raises(ProfilerError):
        table.drain()
    with pytest.raises(ProfilerError):
        table.record("main")


def test_table_introspection():
    table = SampleTable()
    table.record("x")
    table.record("y")
    table.record("x")
    assert len(table) == 2
    assert "x" in table and "z" not in table
    assert table.total == 3
    assert table.snapshot() == {"x": 2, "y": 1}


def test_format_folded_lines():
    lines = format_folded([("main;work", 7), ("main", 1)])
    assert lines == ["main 1", "main;work 7"]


def test_write_folded_to_stream():
    stream = io.StringIO()
    assert write_folded([("main", 1)], stream) == 1
    assert stream.getvalue() == "main 1\n"


def test_leaf_counts_and_summary():
    entries = [("main;a;leaf", 3), ("main;b;leaf", 1), ("main;other", 4)]
    assert leaf_counts(entries) == {"leaf": 4, "other": 4}
    table = summarise(entries, limit=5)
    assert "function" in table and "samples" in table
    assert "leaf" in table and "50.0%" in table
