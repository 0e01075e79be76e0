"""Tests for the queued side-effect tasks."""

from tasks import TaskQueue


class Flaky:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if len(self.calls) <= self.failures:
            raise RuntimeError("temporarily unavailable")
        return "ok"


class TestTaskQueue:

    def test_runs_tasks_in_order(self):
        done = []
        queue = TaskQueue(sleep=lambda s: None)
        queue.enqueue("first", done.append, 1)
        queue.enqueue("second", done.append, 2)

        assert queue.drain() == 2
        assert done == [1, 2]
        assert queue.pending == []

    def test_retries_with_backoff(self):
        sleeps = []
        flaky = Flaky(failures=2)
        queue = TaskQueue(sleep=sleeps.append)
        task = queue.enqueue("notify", flaky, "job_1")

        assert queue.drain() == 1
        assert task.attempts == 3
        assert flaky.calls == [("job_1",)] * 3
        assert sleeps == [1.0, 2.0]
        assert queue.dead_letters == []

    def test_exhausted_task_goes_to_dead_letters(self):
        after = []
        queue = TaskQueue(max_attempts=2, sleep=lambda s: None)
        queue.enqueue("broken", Flaky(failures=5))
        queue.enqueue("after", after.append, "ran")

        assert queue.drain() == 1
        assert after == ["ran"]
        (dead,) = queue.dead_letters
        assert dead.name == "broken"
        assert dead.attempts == 2
        assert dead.error == "temporarily unavailable"
