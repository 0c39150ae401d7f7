"""
Worker pool that fans jobs out over remote sessions.

The orchestrator fills the work queue with every job and closes it, opens
one RemoteSession per host, and starts one worker thread per session.
Each worker pulls jobs until the queue is drained, runs them on its host
and pushes the captured output to the result collector. The orchestrator
reads results as they arrive and finally waits on the completion barrier,
so every session has been released before run() returns.
"""

# pylint: disable=broad-exception-caught

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .queues import CompletionBarrier, ResultCollector, WorkQueue
from .remote import HostDescriptor, RemoteSession, SetupError

logger = logging.getLogger(__name__)

JOB_ORDERS = ("reverse", "catalogue")
SETUP_ERROR_POLICIES = ("abort", "skip")


@dataclass
class JobResult:
    """Captured output of one job."""

    job: str
    host: str
    output: str


@dataclass
class WorkerReport:
    """What a worker tells the supervisor when it stops."""

    host: str
    completed: int
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class SetupOutcome:
    """Result of establishing the session for one host."""

    host: HostDescriptor
    session: Optional[RemoteSession] = None
    error: Optional[SetupError] = None

    @property
    def ok(self) -> bool:
        return self.session is not None


@dataclass
class FarmReport:
    """Summary of a completed run."""

    total: int
    results: List[JobResult] = field(default_factory=list)
    workers: List[WorkerReport] = field(default_factory=list)
    setup_failures: List[SetupOutcome] = field(default_factory=list)

    @property
    def missing(self) -> int:
        return self.total - len(self.results)

    @property
    def failed_workers(self) -> List[WorkerReport]:
        return [w for w in self.workers if w.failed]

    @property
    def ok(self) -> bool:
        return self.missing == 0 and not self.failed_workers


def order_jobs(jobs: Sequence[str], order: str = "reverse") -> List[str]:
    """Return jobs in the order they are queued."""
    if order == "reverse":
        return list(reversed(jobs))
    if order == "catalogue":
        return list(jobs)
    raise ValueError(
        f"Unknown job order '{order}'. Choose from: {', '.join(JOB_ORDERS)}"
    )


class Worker:
    """Drives one session against the shared work queue."""

    def __init__(
        self,
        session: RemoteSession,
        work_queue: WorkQueue,
        collector: ResultCollector,
        barrier: CompletionBarrier,
        reports: "queue.Queue[WorkerReport]",
    ):
        self.session = session
        self.work_queue = work_queue
        self.collector = collector
        self.barrier = barrier
        self.reports = reports
        self.name = str(session.host)

    def run(self):
        """
        Pull jobs until the queue is closed and empty, then close the
        session and signal the barrier.

        A job that raises is not requeued; the worker stops and reports
        the error to the supervisor instead.
        """
        completed = 0
        error = None
        try:
            for job in self.work_queue:
                logger.debug(f"{self.name} picked up job {job}")
                output = self.session.run_job(job)
                self.collector.put(JobResult(job, self.name, output))
                completed += 1
        except Exception as e:
            logger.error(f"Worker on {self.name} stopped after {completed} jobs: {e}")
            error = e
        finally:
            try:
                self.session.close()
            finally:
                self.reports.put(WorkerReport(self.name, completed, error))
                self.barrier.done()


def establish_sessions(
    hosts: Sequence[HostDescriptor],
    session_factory: Callable[[HostDescriptor], RemoteSession],
    on_setup_error: str = "abort",
) -> List[SetupOutcome]:
    """
    Establish a session on every host before any work starts.

    With ``abort``, the first failure closes the sessions already opened
    and raises. With ``skip``, failures are returned alongside the
    successes, and only a total failure raises.

    Raises:
        SetupError: As described above
        ValueError: If the policy is unknown or there are no hosts
    """
    if on_setup_error not in SETUP_ERROR_POLICIES:
        raise ValueError(
            f"Unknown setup error policy '{on_setup_error}'. "
            f"Choose from: {', '.join(SETUP_ERROR_POLICIES)}"
        )
    if not hosts:
        raise ValueError("No hosts to run on")

    outcomes = []
    for host in hosts:
        try:
            outcomes.append(SetupOutcome(host, session=session_factory(host)))
        except SetupError as e:
            logger.error(str(e))
            outcomes.append(SetupOutcome(host, error=e))
            if on_setup_error == "abort":
                _close_sessions(outcomes)
                raise

    if not any(outcome.ok for outcome in outcomes):
        _close_sessions(outcomes)
        raise next(outcome.error for outcome in outcomes if outcome.error)
    return outcomes


def _close_sessions(outcomes: Sequence[SetupOutcome]):
    for outcome in outcomes:
        if outcome.session is not None:
            outcome.session.close()


class TestFarm:
    """
    Orchestrates one run of the farm.

    Args:
        hosts: Machines to run on, one worker each
        session_factory: Opens a RemoteSession for a host
        job_order: ``reverse`` or ``catalogue``
        on_setup_error: ``abort`` or ``skip``
        poll_interval: Seconds between checks for finished workers while
            waiting for results
    """

    __test__ = False

    def __init__(
        self,
        hosts: Sequence[HostDescriptor],
        session_factory: Callable[[HostDescriptor], RemoteSession],
        job_order: str = "reverse",
        on_setup_error: str = "abort",
        poll_interval: float = 0.5,
    ):
        if job_order not in JOB_ORDERS:
            raise ValueError(f"Unknown job order '{job_order}'")
        if on_setup_error not in SETUP_ERROR_POLICIES:
            raise ValueError(f"Unknown setup error policy '{on_setup_error}'")
        self.hosts = list(hosts)
        self.session_factory = session_factory
        self.job_order = job_order
        self.on_setup_error = on_setup_error
        self.poll_interval = poll_interval

    def run(
        self,
        jobs: Sequence[str],
        on_result: Optional[Callable[[JobResult], None]] = None,
        on_setup: Optional[Callable[[SetupOutcome], None]] = None,
    ) -> FarmReport:
        """
        Run every job once and return the report.

        ``on_result`` is called from the calling thread for each result as
        it is collected; ``on_setup`` for each host once sessions are
        established.

        Raises:
            SetupError: If session setup fails under the configured policy.
                No job has been dequeued at that point.
        """
        total = len(jobs)
        work_queue = WorkQueue(total)
        for job in order_jobs(jobs, self.job_order):
            work_queue.put(job)
        work_queue.close()

        outcomes = establish_sessions(
            self.hosts, self.session_factory, self.on_setup_error
        )
        if on_setup is not None:
            for outcome in outcomes:
                on_setup(outcome)

        collector = ResultCollector(total)
        barrier = CompletionBarrier()
        reports: "queue.Queue[WorkerReport]" = queue.Queue()
        report = FarmReport(
            total=total,
            setup_failures=[outcome for outcome in outcomes if not outcome.ok],
        )

        for outcome in outcomes:
            if not outcome.ok:
                continue
            worker = Worker(outcome.session, work_queue, collector, barrier, reports)
            barrier.add()
            threading.Thread(
                target=worker.run, name=f"testfarm-{worker.name}", daemon=True
            ).start()
        logger.info(f"Started {barrier.count} workers for {total} jobs")

        while len(report.results) < total:
            try:
                result = collector.get(timeout=self.poll_interval)
            except queue.Empty:
                # Every put happens before its worker's done(), so an empty
                # collector after the barrier clears means nothing more is coming
                if barrier.is_done() and collector.empty():
                    logger.warning(
                        f"All workers finished with {total - len(report.results)} "
                        "results missing"
                    )
                    break
                continue
            report.results.append(result)
            if on_result is not None:
                on_result(result)

        barrier.wait()
        while not reports.empty():
            report.workers.append(reports.get())
        return report
