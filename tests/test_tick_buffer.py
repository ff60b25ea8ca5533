import threading

from conftest import make_predictions, make_ticks

from tickflow.storage import InMemoryStore
from tickflow.tick_buffer import TickBuffer
from tickflow.types import Tick


def test_extend_skips_ticks_seen_on_earlier_polls():
    buffer = TickBuffer(bucket_ms=10)
    tick = Tick("AAPL", 100.0, 1.0, 1000, "binance")

    assert buffer.extend([tick]) == 1
    for _ in range(9):
        assert buffer.extend([tick]) == 0
    # same 10 ms bucket, later arrival
    assert buffer.extend([Tick("AAPL", 100.5, 1.0, 1005, "binance")]) == 0

    assert buffer.size("AAPL") == 1
    assert buffer.extend([Tick("AAPL", 101.0, 1.0, 1010, "binance")]) == 1
    assert [t.timestamp for t in buffer.window("AAPL")] == [1000, 1010]


def test_extend_tracks_exchanges_separately():
    buffer = TickBuffer()
    buffer.extend([Tick("AAPL", 100.0, 1.0, 1000, "binance")])
    accepted = buffer.extend(
        [Tick("AAPL", 100.1, 1.0, 1000, "replay"), Tick("AAPL", 99.0, 1.0, 900, "binance")]
    )

    assert accepted == 1
    assert [t.exchange for t in buffer.window("AAPL")] == ["binance", "replay"]


def test_append_keeps_every_stream_tick():
    buffer = TickBuffer()
    tick = Tick("AAPL", 100.0, 1.0, 1000, "stream")
    assert [buffer.append(tick) for _ in range(3)] == [1, 2, 3]


def test_concurrent_appends_and_snapshots():
    buffer = TickBuffer(maxlen=100)
    store = InMemoryStore()
    writers, per_writer = 8, 50
    snapshots = []
    start = threading.Barrier(writers + 1)

    def write(worker):
        start.wait()
        ticks = make_ticks(n=per_writer, start_ts=worker * 1_000_000, exchange=f"ex{worker}")
        records = make_predictions([0.5] * per_writer, start_ts=worker * 1_000_000)
        for tick, record in zip(ticks, records):
            buffer.append(tick)
            store.append_prediction(record)

    def read():
        start.wait()
        for _ in range(200):
            snapshots.append(buffer.window("BTC/USD"))

    threads = [threading.Thread(target=write, args=(i,)) for i in range(writers)]
    threads.append(threading.Thread(target=read))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert buffer.size("BTC/USD") == 100
    assert len(buffer.window("BTC/USD")) == 100
    assert all(isinstance(s, tuple) and len(s) <= 100 for s in snapshots)
    assert len(store.predictions_since(0)) == writers * per_writer
