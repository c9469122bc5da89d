"""
Tests for the SQLite telemetry store.
"""
from concurrent.futures import ThreadPoolExecutor

import pytest
from grappa import should

from relaystat.models import AgentTag, TelemetryRecord
from relaystat.storage import TelemetryStore, negotiate_store

NOW = 1_700_000_000_000


def make_record(agent=AgentTag.MANAGER, in_bytes=100, ts=NOW, duration_ms=10, out_bytes=50):
    return TelemetryRecord(
        timestamp=ts,
        agent=agent,
        in_bytes=in_bytes,
        estimated_tokens=in_bytes // 4,
        out_bytes=out_bytes,
        upstream_status=200,
        duration_ms=duration_ms,
    )


@pytest.fixture
def telemetry_store(tmp_path):
    store = TelemetryStore(tmp_path / "stats.db")
    yield store
    store.close()


def test_append_assigns_increasing_ids(telemetry_store):
    first = telemetry_store.append(make_record())
    second = telemetry_store.append(make_record())

    first.id | should.equal(1)
    second.id | should.equal(2)
    telemetry_store.count() | should.equal(2)


def test_append_does_not_mutate_input(telemetry_store):
    record = make_record()
    stored = telemetry_store.append(record)

    record.id | should.be.none
    stored.in_bytes | should.equal(record.in_bytes)


def test_summarize_groups_by_agent(telemetry_store):
    for size, duration in [(100, 10), (200, 20), (300, 60)]:
        telemetry_store.append(make_record(in_bytes=size, duration_ms=duration))
    telemetry_store.append(make_record(agent=AgentTag.CODER, in_bytes=40))

    summary = {row.agent: row for row in telemetry_store.summarize()}

    summary | should.have.keys("manager", "coder")
    summary["manager"].requests | should.equal(3)
    summary["manager"].sum_in | should.equal(600)
    summary["manager"].sum_out | should.equal(150)
    summary["manager"].avg_ms | should.equal(30.0)
    summary["coder"].requests | should.equal(1)


def test_summarize_agent_filter(telemetry_store):
    telemetry_store.append(make_record(agent=AgentTag.TESTER))
    telemetry_store.append(make_record(agent=AgentTag.CODER))

    rows = telemetry_store.summarize(agent="tester")

    rows | should.have.length(1)
    rows[0].agent | should.equal("tester")


def test_time_window_filtering(telemetry_store):
    telemetry_store.append(make_record(ts=NOW - 10 * 60 * 1000))
    telemetry_store.append(make_record(ts=NOW))

    telemetry_store.list_raw(since_ms=NOW - 15 * 60 * 1000) | should.have.length(2)
    telemetry_store.list_raw(since_ms=NOW - 5 * 60 * 1000) | should.have.length(1)
    telemetry_store.summarize(since_ms=NOW + 1) | should.equal([])


def test_list_raw_ascending_ids(telemetry_store):
    for agent in (AgentTag.CODER, AgentTag.MANAGER, AgentTag.CODER):
        telemetry_store.append(make_record(agent=agent))

    records = telemetry_store.list_raw(agent="coder")

    [r.id for r in records] | should.equal([1, 3])
    [r.agent for r in records] | should.equal([AgentTag.CODER, AgentTag.CODER])


def test_concurrent_appends_from_threads(telemetry_store):
    """No lost rows and no duplicated ids under concurrent writers"""
    with ThreadPoolExecutor(max_workers=8) as pool:
        stored = list(pool.map(lambda i: telemetry_store.append(make_record(in_bytes=i)), range(200)))

    ids = sorted(r.id for r in stored)
    ids | should.equal(list(range(1, 201)))
    telemetry_store.count() | should.equal(200)
    telemetry_store.summarize()[0].sum_in | should.equal(sum(range(200)))


def test_records_survive_reopen(tmp_path):
    path = tmp_path / "stats.db"
    store = TelemetryStore(path)
    store.append(make_record())
    store.close()

    reopened = TelemetryStore(path)
    reopened.count() | should.equal(1)
    reopened.append(make_record()).id | should.equal(2)
    reopened.close()


def test_negotiate_store_available(tmp_path):
    capability = negotiate_store(tmp_path / "nested" / "stats.db")

    capability.available | should.be.true
    assert isinstance(capability.store, TelemetryStore)
    capability.store.close()


def test_negotiate_store_degrades_on_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")

    capability = negotiate_store(blocker / "stats.db")

    capability.available | should.be.false
    capability.store | should.be.none
    capability.reason | should.not_be.none


def test_negotiate_store_without_path():
    negotiate_store("").available | should.be.false


def test_store_accepts_string_path(tmp_path):
    store = TelemetryStore(str(tmp_path / "stats.db"))
    store.append(make_record()).id | should.equal(1)
    store.close()

    negotiate_store(str(tmp_path / "stats.db")).available | should.be.true
