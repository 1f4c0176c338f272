"""
Task worker running rebalance commands from the durable queue under a watchdog.
"""

import asyncio
from typing import Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from rebalance_engine.commands.base import CommandStatus
from rebalance_engine.commands.rebalance import RebalanceCommand
from rebalance_engine.config.models import WatchdogConfig
from rebalance_engine.context import RunContext, clear_current_run, set_current_run
from rebalance_engine.engine import RebalanceEngine
from rebalance_engine.exceptions import ErrorType
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import RebalanceTask
from rebalance_engine.queue_service import RedisTaskQueue

app_logger = AppLogger(__name__)


class RebalanceWorker:
    """Dequeues rebalance tasks and retries timed-out runs up to the attempt bound"""

    def __init__(self, queue: RedisTaskQueue, engine: RebalanceEngine,
                 watchdog: Optional[WatchdogConfig] = None):
        self.queue = queue
        self.engine = engine
        self.watchdog = watchdog or WatchdogConfig()
        self.running = False
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.processing_tasks: Set[asyncio.Task] = set()
        self.semaphore: Optional[asyncio.Semaphore] = None

    async def start(self):
        """Recover stuck tasks, start the delayed-task promoter and run the main loop"""
        app_logger.log_info("Starting rebalance worker...")
        self.running = True
        self.semaphore = asyncio.Semaphore(self.watchdog.max_concurrent_tasks)

        recovered = await self.queue.recover_stuck_tasks()
        if recovered:
            app_logger.log_info(f"Recovered {recovered} tasks left active by a previous run")
        app_logger.log_info(f"Queue state at startup: {await self.queue.get_queue_stats()}")

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._promote_delayed,
            'interval',
            seconds=self.watchdog.promote_interval_seconds,
            id='promote_delayed_tasks',
            name='Promote delayed rebalance tasks',
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        app_logger.log_info(f"Worker started with max {self.watchdog.max_concurrent_tasks} concurrent tasks, "
                            f"watchdog {self.watchdog.timeout_seconds}s x {self.watchdog.max_attempts} attempts")

        await self._main_loop()

    async def stop(self):
        if not self.running:
            return

        app_logger.log_info("Stopping rebalance worker...")
        self.running = False

        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        for task in list(self.processing_tasks):
            if not task.done():
                task.cancel()
        if self.processing_tasks:
            await asyncio.gather(*self.processing_tasks, return_exceptions=True)

        app_logger.log_info("Rebalance worker stopped")

    async def _main_loop(self):
        while self.running:
            try:
                self.processing_tasks = {task for task in self.processing_tasks if not task.done()}

                if len(self.processing_tasks) >= self.watchdog.max_concurrent_tasks:
                    await asyncio.sleep(1)
                    continue

                task = await self.queue.dequeue(timeout=self.watchdog.dequeue_timeout_seconds)
                if task is None:
                    continue

                processing = asyncio.create_task(
                    self._process_with_semaphore(task),
                    name=task.rebalance_request_id
                )
                self.processing_tasks.add(processing)

            except Exception as e:
                active = [task.get_name() for task in self.processing_tasks if not task.done()]
                app_logger.log_error(f"Error in worker loop: {e}. Active tasks: {active}")
                await asyncio.sleep(10)

    async def _process_with_semaphore(self, task: RebalanceTask):
        async with self.semaphore:
            await self.process_task(task)

    async def process_task(self, task: RebalanceTask) -> CommandStatus:
        """Run one attempt under the watchdog and decide between completion and retry"""
        set_current_run(RunContext(task.rebalance_request_id, task.user_id, task.attempt))
        command = RebalanceCommand(task)
        services = {'engine': self.engine, 'max_attempts': self.watchdog.max_attempts}

        try:
            app_logger.log_info(f"Processing {command}")
            try:
                result = await asyncio.wait_for(command.execute(services), timeout=self.watchdog.timeout_seconds)
            except asyncio.TimeoutError:
                return await self._handle_timeout(task)

            if result.status == CommandStatus.RETRY:
                await self._retry_or_fail(task, result.error or "Retryable failure", None)
                return CommandStatus.RETRY

            if result.status == CommandStatus.SUCCESS:
                app_logger.log_info(f"Command executed successfully: {result.message}")
            elif result.status == CommandStatus.STOPPED:
                app_logger.log_info(f"Rebalance stopped: {result.message}")
            else:
                app_logger.log_error(f"Command failed: {result.error}")

            await self.queue.complete(task.rebalance_request_id)
            return result.status

        except Exception as e:
            app_logger.log_error(f"Error processing task {task.rebalance_request_id}: {e}", exc_info=True)
            await self.queue.complete(task.rebalance_request_id)
            return CommandStatus.FAILED
        finally:
            clear_current_run()

    async def _handle_timeout(self, task: RebalanceTask) -> CommandStatus:
        message = (f"Rebalance attempt {task.attempt}/{self.watchdog.max_attempts} timed out "
                   f"after {self.watchdog.timeout_seconds}s")
        app_logger.log_warning(message)
        retried = await self._retry_or_fail(task, message, ErrorType.TIMEOUT)
        return CommandStatus.RETRY if retried else CommandStatus.FAILED

    async def _retry_or_fail(self, task: RebalanceTask, message: str, error_type: Optional[ErrorType]) -> bool:
        """
        Returns:
            True if the task was rescheduled, False if attempts are exhausted
        """
        if task.attempt < self.watchdog.max_attempts:
            await self.queue.schedule_retry(task, self.watchdog.retry_delay_seconds)
            return True

        app_logger.log_error(f"Rebalance failed after {task.attempt} attempts: {message}")
        if error_type is not None:
            await self.engine.fail_request(
                task,
                f"Rebalance error ({error_type.value}): {message}",
                error_type,
            )
        await self.queue.complete(task.rebalance_request_id)
        return False

    async def _promote_delayed(self):
        try:
            await self.queue.promote_due()
        except Exception as e:
            app_logger.log_error(f"Failed to promote delayed tasks: {e}")
