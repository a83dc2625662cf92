"""Synthetic workload shipped to the soak test VM."""
from pathlib import Path

LOG_GENERATOR = "log_generator.py"


def load_log_generator() -> bytes:
    """Return the source of the log generator script uploaded to the VM."""
    return (Path(__file__).parent / LOG_GENERATOR).read_bytes()
