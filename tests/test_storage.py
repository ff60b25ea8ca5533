import asyncio

import orjson
import pytest
from conftest import make_book, make_predictions, make_ticks

from tickflow.errors import StorageWriteFailure
from tickflow.feeds import ReplayFeed
from tickflow.storage import InMemoryStore
from tickflow.storage_writer import StorageWriter
from tickflow.types import DriftAlert, ModelDeployment, Tick


def test_tick_upsert_replaces_same_key():
    store = InMemoryStore()
    store.upsert_ticks(make_ticks(n=3))
    first = make_ticks(n=3)[0]
    replacement = Tick(
        symbol=first.symbol, price=999.0, volume=1.0, timestamp=first.timestamp, exchange=first.exchange
    )
    store.upsert_ticks([replacement])

    ticks = store.ticks_since(0)
    assert len(ticks) == 3
    assert ticks[0].price == 999.0
    assert store.tick_counts_since(0) == {"fake": 3}
    assert store.ticks_since(0, symbol="ETH/USD") == []


def test_store_evicts_oldest_rows():
    store = InMemoryStore(max_rows=5)
    store.upsert_ticks(make_ticks(n=8))
    ticks = store.ticks_since(0)
    assert len(ticks) == 5
    assert ticks[0].price == pytest.approx(100.3)


def test_latest_order_book():
    store = InMemoryStore()
    store.upsert_order_books([make_book(timestamp=1), make_book(timestamp=5), make_book(timestamp=3)])
    assert store.latest_order_book("BTC/USD").timestamp == 5
    assert store.latest_order_book("ETH/USD") is None


def test_prediction_log_keeps_append_order():
    store = InMemoryStore()
    records = make_predictions([0.5, 0.6, 0.7], start_ts=100)
    for record in reversed(records):
        store.append_prediction(record)

    assert [r.confidence for r in store.predictions_since(0)] == [0.7, 0.6, 0.5]
    assert store.predictions_since(101) == [records[2], records[1]]


def test_active_model_row():
    store = InMemoryStore()
    assert store.get_active_model() is None
    store.set_active_model(ModelDeployment(version="v1", deployed_at=1))
    assert store.get_active_model().version == "v1"


def test_mirror_writes_jsonl(tmp_path):
    writer = StorageWriter(output_dir=str(tmp_path), prefix="predictions", batch_size=1)
    store = InMemoryStore(prediction_writer=writer)
    for record in make_predictions([0.5, 0.6]):
        store.append_prediction(record)
    store.close()

    files = list(tmp_path.glob("predictions_*.jsonl"))
    assert len(files) == 1
    rows = [orjson.loads(line) for line in files[0].read_bytes().splitlines()]
    assert [row["confidence"] for row in rows] == [0.5, 0.6]
    assert rows[0]["modelVersion"] == "linear-v1"


def test_writer_batches_until_flush(tmp_path):
    writer = StorageWriter(output_dir=str(tmp_path), prefix="alerts", batch_size=10, flush_interval_sec=3600)
    writer.write({"id": "a"})
    assert writer.get_stats()["buffer_size"] == 1
    assert writer.flush() == 1
    assert writer.get_stats()["total_written"] == 1
    writer.close()


def test_writer_failure_keeps_record_buffered(tmp_path):
    writer = StorageWriter(output_dir=str(tmp_path), prefix="alerts", batch_size=10, flush_interval_sec=3600)
    writer.write({"id": "a"})
    # unreachable output directory makes the open fail
    writer.output_dir = tmp_path / "missing" / "dir"

    with pytest.raises(StorageWriteFailure) as exc:
        writer.flush()
    assert exc.value.table == "alerts"
    assert writer.get_stats()["buffer_size"] == 1


def test_alert_mirror_failure_still_commits(tmp_path):
    writer = StorageWriter(output_dir=str(tmp_path), prefix="alerts", batch_size=1)
    writer.output_dir = tmp_path / "missing"
    store = InMemoryStore(alert_writer=writer)

    alert = DriftAlert(id="x", type="volatility", severity="high", message="m", timestamp=1)
    with pytest.raises(StorageWriteFailure):
        store.append_alert(alert)
    assert [a.id for a in store.unresolved_alerts()] == ["x"]


def test_replay_feed_from_jsonl(tmp_path):
    path = tmp_path / "recording.jsonl"
    lines = [
        orjson.dumps({"symbol": "BTC/USD", "price": 100.0, "volume": 1.0, "timestamp": 1}),
        b"not json",
        orjson.dumps({"symbol": "ETH/USD", "price": 10.0, "volume": 1.0, "timestamp": 2}),
        orjson.dumps({"symbol": "BTC/USD", "bids": [[99, 1]], "asks": [[101, 1]], "timestamp": 3}),
        orjson.dumps({"symbol": "BTC/USD", "price": 101.0, "volume": 1.0, "timestamp": 4}),
    ]
    path.write_bytes(b"\n".join(lines) + b"\n")

    feed = ReplayFeed.from_jsonl(path, batch_size=3)
    assert feed.remaining == 4

    first = asyncio.run(feed.fetch(["BTC/USD"]))
    assert [t.timestamp for t in first.ticks] == [1]
    assert len(first.order_books) == 1
    assert first.ticks[0].exchange == "replay"

    second = asyncio.run(feed.fetch(["BTC/USD"]))
    assert [t.price for t in second.ticks] == [101.0]

    exhausted = asyncio.run(feed.fetch(["BTC/USD"]))
    assert exhausted.ticks == []
    assert feed.remaining == 0
