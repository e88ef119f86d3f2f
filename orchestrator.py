"""
Single-flight gate in front of the invoice workflow.

Only one browser session may run at a time. A request that arrives while
another is running gets a Busy result straight away; nothing is queued.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from supabase_agent import (
    ErrorKind,
    WorkflowOptions,
    WorkflowResult,
    busy_result,
    run_workflow,
)

logger = logging.getLogger("supabase_invoice.orchestrator")

Workflow = Callable[[WorkflowOptions], Awaitable[WorkflowResult]]


class DownloadOrchestrator:
    def __init__(
        self,
        workflow: Workflow = run_workflow,
        lock: Optional[asyncio.Lock] = None,
        options_factory: Callable[[], WorkflowOptions] = WorkflowOptions.from_env,
    ):
        self.workflow = workflow
        self.lock = lock or asyncio.Lock()
        self.options_factory = options_factory

    @property
    def in_progress(self) -> bool:
        return self.lock.locked()

    async def request_download(
        self,
        github_username: Optional[str] = None,
        github_password: Optional[str] = None,
    ) -> WorkflowResult:
        # No await between the check and the acquire, so this is atomic on the loop
        if self.lock.locked():
            logger.warning("Download requested while another is running; rejecting")
            return busy_result()

        async with self.lock:
            start_time = time.time()
            options = self.options_factory().with_credentials(github_username, github_password)
            try:
                result = await self.workflow(options)
            except Exception as e:
                logger.exception(f"Workflow crashed: {e}")
                result = WorkflowResult(
                    status="error",
                    message="Unexpected error during invoice download",
                    error_kind=ErrorKind.UNKNOWN_FAILURE,
                )
            logger.info(f"Download finished in {time.time() - start_time:.2f}s - status: {result.status}")
            return result
