"""
Tests for the pipeline coordinator: single worker, ordered steps, progress
log, and stop handling. Steps are small Python child processes.
"""
import sys
import pytest


def step(name, code, message=None):
    from api.services.pipeline_runner import PipelineStep
    return PipelineStep(name, message or f"Starting {name}...", (sys.executable, '-c', code))


@pytest.fixture
def coordinator_factory(tmp_path):
    from api.services.pipeline_runner import PipelineCoordinator

    created = []

    def factory(steps):
        coordinator = PipelineCoordinator(steps, cwd=tmp_path)
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.shutdown(timeout=5)


def messages(coordinator):
    return [entry.message for entry in coordinator.progress.since(0)]


class TestProgressLog:
    """Test the append-only progress log."""

    def test_append_returns_index(self):
        """Entries are numbered from zero."""
        from api.services.pipeline_runner import ProgressLog

        log = ProgressLog()
        assert log.append('a') == 0
        assert log.append('b') == 1
        assert len(log) == 2

    def test_since(self):
        """since() returns entries from an index onward."""
        from api.services.pipeline_runner import ProgressLog

        log = ProgressLog()
        for message in ['a', 'b', 'c']:
            log.append(message)

        assert [e.message for e in log.since(1)] == ['b', 'c']
        assert log.since(3) == []
        assert [e.message for e in log.since(-5)] == ['a', 'b', 'c']


class TestPipelineRun:
    """Test running steps in order."""

    def test_steps_run_in_order(self, coordinator_factory):
        """Each step's output follows its start message."""
        from api.services.pipeline_runner import COMPLETED_MESSAGE, RunStatus

        coordinator = coordinator_factory([
            step('first', "print('one')"),
            step('second', "print('two'); print(); print('three')"),
        ])
        run = coordinator.submit()

        assert coordinator.wait(timeout=30)
        assert run.status is RunStatus.COMPLETED
        assert messages(coordinator) == [
            'Starting first...', 'one',
            'Starting second...', 'two', 'three',
            COMPLETED_MESSAGE,
        ]
        assert run.started_at <= run.finished_at
        assert coordinator.is_running is False

    def test_failing_step_stops_pipeline(self, coordinator_factory):
        """A non-zero exit fails the run and skips later steps."""
        from api.services.pipeline_runner import RunStatus

        coordinator = coordinator_factory([
            step('ok', "print('fine')"),
            step('bad', "import sys; print('oops'); sys.exit(2)"),
            step('never', "print('unreachable')"),
        ])
        run = coordinator.submit()

        assert coordinator.wait(timeout=30)
        assert run.status is RunStatus.FAILED
        assert run.error == 'Error in bad'
        log = messages(coordinator)
        assert log[-1] == 'Error in bad'
        assert 'unreachable' not in log
        assert run.current_step == 1

    def test_stderr_is_captured(self, coordinator_factory):
        """Child stderr lands in the progress log too."""
        coordinator = coordinator_factory([
            step('warn', "import sys; sys.stderr.write('careful\\n')"),
        ])
        coordinator.submit()

        assert coordinator.wait(timeout=30)
        assert 'careful' in messages(coordinator)

    def test_missing_executable(self, coordinator_factory):
        """A step that cannot start fails the run."""
        from api.services.pipeline_runner import PipelineStep, RunStatus

        coordinator = coordinator_factory([
            PipelineStep('ghost', 'Starting ghost...', ('/nonexistent/binary',)),
        ])
        run = coordinator.submit()

        assert coordinator.wait(timeout=30)
        assert run.status is RunStatus.FAILED
        assert any(m.startswith('Error: could not start ghost') for m in messages(coordinator))

    def test_run_to_dict(self, coordinator_factory):
        """Run state serializes with step names."""
        coordinator = coordinator_factory([step('only', "print('x')")])
        run = coordinator.submit()
        coordinator.wait(timeout=30)

        data = run.to_dict()
        assert data['status'] == 'completed'
        assert data['steps'] == ['only']
        assert data['current_step_name'] == 'only'
        assert data['error'] is None


class TestSingleRun:
    """Test that only one run is active at a time."""

    def test_second_submit_rejected(self, coordinator_factory):
        """Submitting while a run is active raises PipelineAlreadyRunning."""
        from api.services.pipeline_runner import PipelineAlreadyRunning

        coordinator = coordinator_factory([step('slow', "import time; time.sleep(2)")])
        coordinator.submit()

        with pytest.raises(PipelineAlreadyRunning):
            coordinator.submit()

    def test_resubmit_after_completion(self, coordinator_factory):
        """A finished run does not block the next one."""
        coordinator = coordinator_factory([step('quick', "print('x')")])
        first = coordinator.submit()
        coordinator.wait(timeout=30)

        second = coordinator.submit()
        coordinator.wait(timeout=30)

        assert first.run_id != second.run_id
        assert coordinator.history == [first, second]

    def test_stop_without_run(self, coordinator_factory):
        """Stopping an idle pipeline raises PipelineNotRunning."""
        from api.services.pipeline_runner import PipelineNotRunning

        coordinator = coordinator_factory([step('quick', "print('x')")])

        with pytest.raises(PipelineNotRunning):
            coordinator.stop()


class TestStop:
    """Test stopping an active run."""

    def test_stop_terminates_step(self, coordinator_factory):
        """stop() kills the running child and skips remaining steps."""
        import time
        from api.services.pipeline_runner import RunStatus

        coordinator = coordinator_factory([
            step('sleeper', "import time; print('sleeping', flush=True); time.sleep(60)"),
            step('after', "print('should not run')"),
        ])
        run = coordinator.submit()

        deadline = time.time() + 30
        while 'sleeping' not in messages(coordinator) and time.time() < deadline:
            time.sleep(0.05)
        coordinator.stop()

        assert coordinator.wait(timeout=30)
        assert run.status is RunStatus.STOPPED
        log = messages(coordinator)
        assert 'Stop requested' in log
        assert log[-1] == 'Pipeline stopped'
        assert 'should not run' not in log


class TestDefaultSteps:
    """Test the default pipeline definition."""

    def test_default_order(self):
        """Prices are marked up before any upload; products go last."""
        from api.services.pipeline_runner import DEFAULT_STEPS

        names = [s.name for s in DEFAULT_STEPS]
        assert names == [
            'update_prices.py',
            'catalog_sync.py categories',
            'catalog_sync.py brands',
            'catalog_sync.py carousel',
            'catalog_sync.py products',
        ]

    def test_steps_use_current_interpreter(self):
        """Backend scripts run with the same Python."""
        from api.services.pipeline_runner import DEFAULT_STEPS

        assert all(s.command[0] == sys.executable for s in DEFAULT_STEPS)
