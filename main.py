import argparse
import asyncio
import os
import tempfile
import time

from cryptography.fernet import Fernet
from rfq_ledger import (
    EncryptedObjectStore,
    MessageDraft,
    NewRfq,
    RetryingObjectStore,
    RfqLedger,
    sqlite_object_store,
)
from rfq_ledger.models import Contact, EventAuthor


async def benchmark(num_events: int):
    print(f"Benchmarking with {num_events} events on one RFQ...")

    async def run_mode(db_path: str):
        async with sqlite_object_store(db_path) as backend:
            store = EncryptedObjectStore(RetryingObjectStore(backend), Fernet.generate_key())
            ledger = RfqLedger(store)
            meta = await ledger.create_rfq(
                NewRfq(
                    tenant_id="bench",
                    manufacturer_id="mfg_bench",
                    buyer=Contact(email="buyer@example.com"),
                    subject="Benchmark",
                )
            )

            # Appends are sequential: each one reads and advances the meta record.
            start_append = time.perf_counter()
            for i in range(num_events):
                await ledger.append_event(
                    meta.id, MessageDraft(by=EventAuthor.BUYER, body=f"message {i}")
                )
            append_time = time.perf_counter() - start_append

            start_read = time.perf_counter()
            events = await ledger.scan_events(meta.id)
            read_time = time.perf_counter() - start_read

            # rfq_created plus the messages
            assert len(events) == num_events + 1
        return append_time, read_time

    mem_append, mem_read = await run_mode(":memory:")
    with tempfile.TemporaryDirectory() as tmpdir:
        file_append, file_read = await run_mode(os.path.join(tmpdir, "bench.db"))

    def rate(seconds: float) -> float:
        return num_events / seconds if seconds > 0 else 0

    print(f"\n--- Results for {num_events} events ---")
    print(f"In-memory SQLite  - Append: {mem_append:.4f}s ({rate(mem_append):,.0f} events/s), Read: {mem_read:.4f}s ({rate(mem_read):,.0f} events/s)")
    print(f"File-based SQLite - Append: {file_append:.4f}s ({rate(file_append):,.0f} events/s), Read: {file_read:.4f}s ({rate(file_read):,.0f} events/s)")


def serve(db_path: str, host: str, port: int):
    import uvicorn

    from rfq_ledger.api import create_app

    key = os.environ.get("RFQ_LEDGER_KEY")
    uvicorn.run(create_app({"db_path": db_path, "key": key}), host=host, port=port)


def main():
    parser = argparse.ArgumentParser()
    subcommands = parser.add_subparsers(dest="command", required=True)
    bench = subcommands.add_parser("benchmark")
    bench.add_argument("--num-events", type=int, default=1000)
    server = subcommands.add_parser("serve")
    server.add_argument("--db-path", default="rfq_ledger.db")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    if args.command == "benchmark":
        asyncio.run(benchmark(args.num_events))
    else:
        serve(args.db_path, args.host, args.port)


if __name__ == "__main__":
    main()
