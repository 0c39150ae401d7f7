"""
Tests for the worker pool and orchestration.
"""

import queue

import pytest

from testfarm.farm import (
    JobResult,
    SetupOutcome,
    TestFarm,
    Worker,
    establish_sessions,
    order_jobs,
)
from testfarm.queues import CompletionBarrier, ResultCollector, WorkQueue
from testfarm.remote import HostDescriptor, RemoteSession, SetupError

from fakes import FakeChannel, FakeSession


def make_hosts(count):
    return [HostDescriptor(f"host{i}", "alice") for i in range(1, count + 1)]


class SessionRegistry:
    """Session factory that remembers every session it created."""

    def __init__(self, fail_hosts=(), fail_jobs=None, outputs=None):
        self.fail_hosts = set(fail_hosts)
        self.fail_jobs = fail_jobs or {}
        self.outputs = outputs or {}
        self.sessions = {}
        self.attempted = []

    def __call__(self, host):
        self.attempted.append(host.hostname)
        if host.hostname in self.fail_hosts:
            raise SetupError(host, "Connection", ConnectionRefusedError("refused"))
        session = FakeSession(
            host, outputs=self.outputs, fail_on=self.fail_jobs.get(host.hostname)
        )
        self.sessions[host.hostname] = session
        return session


class TestOrderJobs:
    """Test queue ordering of the catalogue."""

    def test_reverse(self):
        """Reverse order queues the last suite first."""
        assert order_jobs(["a", "b", "c"], "reverse") == ["c", "b", "a"]

    def test_catalogue(self):
        """Catalogue order keeps the given order."""
        assert order_jobs(["a", "b", "c"], "catalogue") == ["a", "b", "c"]

    def test_unknown(self):
        """An unknown order is rejected."""
        with pytest.raises(ValueError, match="Unknown job order"):
            order_jobs(["a"], "random")


class TestWorker:
    """Test the per-host worker loop."""

    def test_drains_queue_then_closes(self, host1):
        """A worker runs every queued job, then closes its session."""
        work = WorkQueue(2)
        work.put("a")
        work.put("b")
        work.close()
        collector = ResultCollector(2)
        barrier = CompletionBarrier()
        barrier.add()
        reports = queue.Queue()
        session = FakeSession(host1)

        Worker(session, work, collector, barrier, reports).run()

        assert session.events == ["run:a", "run:b", "close"]
        assert [collector.get().job for _ in range(2)] == ["a", "b"]
        assert barrier.is_done()
        report = reports.get_nowait()
        assert report.completed == 2
        assert not report.failed

    def test_failure_stops_worker_without_requeue(self, host1):
        """A failing job stops the worker and stays consumed."""
        work = WorkQueue(3)
        for job in ("a", "b", "c"):
            work.put(job)
        work.close()
        barrier = CompletionBarrier()
        barrier.add()
        reports = queue.Queue()
        session = FakeSession(host1, fail_on="b")

        Worker(session, work, ResultCollector(3), barrier, reports).run()

        assert session.events == ["run:a", "run:b", "close"]
        assert list(work) == ["c"]
        report = reports.get_nowait()
        assert report.completed == 1
        assert report.failed
        assert barrier.is_done()


class TestEstablishSessions:
    """Test the setup policies."""

    def test_abort_closes_opened_sessions(self):
        """Abort closes earlier sessions and skips later hosts."""
        registry = SessionRegistry(fail_hosts={"host2"})
        with pytest.raises(SetupError, match="Connection failed for alice@host2"):
            establish_sessions(make_hosts(3), registry, "abort")

        assert registry.attempted == ["host1", "host2"]
        assert registry.sessions["host1"].close_count == 1

    def test_skip_keeps_healthy_hosts(self):
        """Skip keeps going and records the failure."""
        registry = SessionRegistry(fail_hosts={"host2"})
        outcomes = establish_sessions(make_hosts(3), registry, "skip")

        assert [o.ok for o in outcomes] == [True, False, True]
        assert isinstance(outcomes[1].error, SetupError)

    def test_skip_with_no_healthy_hosts(self):
        """Skip still raises when no host could be set up."""
        registry = SessionRegistry(fail_hosts={"host1", "host2"})
        with pytest.raises(SetupError):
            establish_sessions(make_hosts(2), registry, "skip")

    def test_unknown_policy(self):
        """An unknown setup policy is rejected."""
        with pytest.raises(ValueError):
            establish_sessions(make_hosts(1), SessionRegistry(), "retry")

    def test_no_hosts(self):
        """An empty host list is rejected up front."""
        with pytest.raises(ValueError, match="No hosts to run on"):
            establish_sessions([], SessionRegistry(), "skip")


class TestTestFarm:
    """Test complete runs of the farm."""

    def test_three_jobs_two_workers(self):
        """Three jobs on two hosts yield three results."""
        registry = SessionRegistry()
        farm = TestFarm(make_hosts(2), registry, poll_interval=0.01)
        seen = []

        report = farm.run(["a", "b", "c"], on_result=seen.append)

        assert report.ok
        assert len(report.results) == 3
        assert seen == report.results
        assert sorted(r.job for r in report.results) == ["a", "b", "c"]
        for result in report.results:
            assert result.output == f"ok {result.job} on {result.host.split('@')[1]}\n"

    def test_every_session_closed_once_after_its_last_job(self):
        """Each session is closed once, after all of its jobs."""
        registry = SessionRegistry()
        farm = TestFarm(make_hosts(3), registry, poll_interval=0.01)

        report = farm.run([f"suite{i}" for i in range(20)])

        assert report.ok
        assert sum(w.completed for w in report.workers) == 20
        ran = []
        for session in registry.sessions.values():
            assert session.close_count == 1
            assert session.events[-1] == "close"
            ran.extend(session.jobs)
        assert sorted(ran) == sorted(f"suite{i}" for i in range(20))

    def test_reverse_order_with_single_worker(self):
        """A single worker sees jobs in reverse order."""
        registry = SessionRegistry()
        farm = TestFarm(make_hosts(1), registry, job_order="reverse")
        farm.run(["a", "b", "c"])
        assert registry.sessions["host1"].jobs == ["c", "b", "a"]

    def test_catalogue_order_with_single_worker(self):
        """A single worker sees jobs in catalogue order."""
        registry = SessionRegistry()
        farm = TestFarm(make_hosts(1), registry, job_order="catalogue")
        farm.run(["a", "b", "c"])
        assert registry.sessions["host1"].jobs == ["a", "b", "c"]

    def test_setup_failure_aborts_before_any_job(self):
        """A setup failure aborts the run with nothing dequeued."""
        registry = SessionRegistry(fail_hosts={"host2"})
        farm = TestFarm(make_hosts(2), registry)
        seen = []

        with pytest.raises(SetupError):
            farm.run(["a", "b", "c"], on_result=seen.append)

        assert seen == []
        assert registry.sessions["host1"].jobs == []
        assert registry.sessions["host1"].close_count == 1

    def test_setup_failure_skipped(self):
        """Skipped hosts are reported and the rest run every job."""
        registry = SessionRegistry(fail_hosts={"host1"})
        farm = TestFarm(make_hosts(2), registry, on_setup_error="skip")
        setups = []

        report = farm.run(["a", "b"], on_setup=setups.append)

        assert report.ok
        assert [s.ok for s in setups] == [False, True]
        assert [s.host.hostname for s in report.setup_failures] == ["host1"]
        assert registry.sessions["host2"].jobs == ["b", "a"]

    def test_worker_failure_reported_not_hung(self):
        """A dead worker shows up as missing results and run() returns."""
        registry = SessionRegistry(fail_jobs={"host1": "c"})
        farm = TestFarm(make_hosts(1), registry, poll_interval=0.01)

        report = farm.run(["a", "b", "c", "d"])

        assert not report.ok
        # Reverse order: d, c (fails), then the worker stops
        assert [r.job for r in report.results] == ["d"]
        assert report.missing == 3
        assert len(report.failed_workers) == 1
        assert registry.sessions["host1"].close_count == 1

    def test_other_workers_continue_after_failure(self):
        """One worker failing does not stop the others."""
        # Whichever worker takes "a" fails; the other drains the rest
        registry = SessionRegistry(fail_jobs={"host1": "a", "host2": "a"})
        farm = TestFarm(make_hosts(2), registry, poll_interval=0.01)

        report = farm.run([f"s{i}" for i in range(10)] + ["a"])

        assert report.missing == 1
        assert len(report.failed_workers) == 1
        assert "a" not in {r.job for r in report.results}
        assert registry.sessions["host2"].close_count == 1
        assert registry.sessions["host1"].close_count == 1

    def test_empty_catalogue(self):
        """An empty catalogue still opens and closes every session."""
        registry = SessionRegistry()
        report = TestFarm(make_hosts(2), registry).run([])
        assert report.ok
        assert report.results == []
        assert all(s.close_count == 1 for s in registry.sessions.values())

    def test_no_hosts(self):
        """Running without hosts fails before any session is attempted."""
        registry = SessionRegistry()
        with pytest.raises(ValueError, match="No hosts to run on"):
            TestFarm([], registry).run(["a"])
        assert registry.attempted == []

    def test_with_real_sessions_on_fake_shells(self):
        """Drive RemoteSession prompt handling through the pool."""
        channels = {}

        def factory(host):
            channel = FakeChannel(
                user=host.user,
                host=host.hostname,
                responder=lambda c: f"ok {c}\n" if c.startswith("go test") else "",
                chunk_size=7,
            )
            channels[host.hostname] = channel
            session = RemoteSession(host, channel)
            session.await_prompt()
            return session

        farm = TestFarm(make_hosts(2), factory, poll_interval=0.01)
        report = farm.run(["api", "state", "worker"])

        assert report.ok
        assert [r.output for r in report.results] == [
            "ok go test -test.timeout=1200s ./...\n"
        ] * 3
        assert all(channel.closed for channel in channels.values())
        suites = [
            command[3:]
            for channel in channels.values()
            for command in channel.sent
            if command.startswith("cd ") and "/" not in command
        ]
        assert sorted(suites) == ["api", "state", "worker"]


class TestSetupOutcome:
    def test_ok(self, host1):
        assert SetupOutcome(host1, session=object()).ok
        assert not SetupOutcome(host1, error=SetupError(host1, "Connection")).ok


class TestJobResult:
    def test_fields(self):
        result = JobResult("state", "alice@host1", "PASS\n")
        assert (result.job, result.host, result.output) == (
            "state",
            "alice@host1",
            "PASS\n",
        )
