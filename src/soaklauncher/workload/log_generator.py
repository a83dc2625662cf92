"""
Write synthetic log records at a fixed rate.

Runs on the soak test VM with only the standard library available. Startup
messages go to stdout, which the launcher redirects to a debug log.
"""
import argparse
import logging
import sys
import time
from datetime import datetime, timezone

logger = logging.getLogger("log_generator")


def build_record(sequence: int, size: int) -> str:
    prefix = f"{datetime.now(timezone.utc).isoformat()} seq={sequence} "
    padding = max(size - len(prefix) - 1, 0)
    return (prefix + "x" * padding)[: max(size - 1, 0)] + "\n"


def open_sink(write_type: str, file_path: str):
    if write_type == "stdout":
        return sys.stdout
    return open(file_path, "a", encoding="utf-8", buffering=1)


def run(size: int, rate: int, write_type: str, file_path: str, max_seconds: float = 0) -> int:
    sink = open_sink(write_type, file_path)
    logger.info("Writing %s records/sec of %s bytes to %s", rate, size, file_path if write_type == "file" else "stdout")
    sequence = 0
    started = time.monotonic()
    try:
        while not max_seconds or time.monotonic() - started < max_seconds:
            window_start = time.monotonic()
            for _ in range(rate):
                sink.write(build_record(sequence, size))
                sequence += 1
            sink.flush()
            elapsed = time.monotonic() - window_start
            if elapsed < 1:
                time.sleep(1 - elapsed)
            else:
                logger.warning("Fell behind: %s records took %.2fs", rate, elapsed)
    finally:
        if sink is not sys.stdout:
            sink.close()
    return sequence


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Synthetic log generator for soak tests")
    parser.add_argument("--log-size-in-bytes", type=int, required=True)
    parser.add_argument("--log-rate", type=int, required=True)
    parser.add_argument("--log-write-type", choices=["file", "stdout"], default="file")
    parser.add_argument("--file-path", default="/tmp/tail_file")
    parser.add_argument("--max-seconds", type=float, default=0, help="Stop after this many seconds (0 runs forever)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", stream=sys.stdout)
    if args.log_size_in_bytes <= 0 or args.log_rate <= 0:
        parser.error("--log-size-in-bytes and --log-rate must be positive")

    logger.info("log_generator starting")
    run(args.log_size_in_bytes, args.log_rate, args.log_write_type, args.file_path, args.max_seconds)
    return 0


if __name__ == "__main__":
    sys.exit(main())
