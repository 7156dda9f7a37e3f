"""Tests for LoopRunner (durq/core/utils/loop_runner.py)."""

from __future__ import annotations

import asyncio
import gc
import threading
import warnings
from unittest.mock import patch

import pytest

from durq.core.utils.loop_runner import LoopRunner, LoopRunnerError


@pytest.mark.unit
class TestLoopRunnerCall:
    def test_call_returns_result_from_loop_thread(self) -> None:
        runner = LoopRunner()

        async def sample(x: int, *, y: int) -> tuple[int, str]:
            await asyncio.sleep(0)
            return x + y, threading.current_thread().name

        try:
            value, thread_name = runner.call(sample, 1, y=2)
        finally:
            runner.stop()

        assert value == 3
        assert thread_name == 'durq-loop'

    def test_call_propagates_exceptions(self) -> None:
        runner = LoopRunner()

        async def failing() -> None:
            raise ValueError('boom')

        try:
            with pytest.raises(ValueError, match='boom'):
                runner.call(failing)
        finally:
            runner.stop()

    def test_same_loop_across_calls(self) -> None:
        runner = LoopRunner()

        async def current_loop() -> asyncio.AbstractEventLoop:
            return asyncio.get_running_loop()

        try:
            assert runner.call(current_loop) is runner.call(current_loop)
        finally:
            runner.stop()

    def test_call_closes_coroutine_when_scheduling_fails(self) -> None:
        """Scheduling failure should not leak an un-awaited coroutine warning."""
        runner = LoopRunner()
        runner.start()

        async def sample() -> int:
            return 1

        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter('always', RuntimeWarning)
                with (
                    patch(
                        'asyncio.run_coroutine_threadsafe',
                        side_effect=RuntimeError('boom'),
                    ),
                    pytest.raises(LoopRunnerError, match='Failed to schedule sample'),
                ):
                    runner.call(sample)
                gc.collect()

            warning_texts = [str(w.message) for w in caught]
            assert not any('was never awaited' in text for text in warning_texts)
        finally:
            runner.stop()

    def test_call_after_stop_raises_instead_of_restarting(self) -> None:
        runner = LoopRunner()
        runner.start()
        runner.stop()
        assert runner.running is False
        assert runner._loop is None

        async def sample() -> int:
            return 1

        with pytest.raises(LoopRunnerError, match='cannot be restarted'):
            runner.call(sample)


@pytest.mark.unit
class TestLoopRunnerLifecycle:
    def test_start_is_idempotent(self) -> None:
        runner = LoopRunner()
        try:
            runner.start()
            thread = runner._thread
            runner.start()
            assert runner._thread is thread
            assert runner.running is True
        finally:
            runner.stop()

    def test_stop_without_start_is_noop(self) -> None:
        runner = LoopRunner()
        runner.stop()
        assert runner.running is False
