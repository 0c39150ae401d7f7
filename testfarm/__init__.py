"""
testfarm distributes a catalogue of test suites across a small pool of
build machines. Each machine is driven through one interactive SSH shell,
suites are pulled from a shared queue, and every suite's output is
collected back in one place.
"""

__version__ = "0.1.0"

from .farm import FarmReport, JobResult, TestFarm, WorkerReport  # noqa: E402
from .remote import HostDescriptor, RemoteSession, SetupError  # noqa: E402

__all__ = [
    "FarmReport",
    "JobResult",
    "TestFarm",
    "WorkerReport",
    "HostDescriptor",
    "RemoteSession",
    "SetupError",
]
