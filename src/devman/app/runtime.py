"""Application runtime wiring settings to the orchestrator."""

from __future__ import annotations

import asyncio
from types import TracebackType

import httpx
from loguru import logger

from devman.bus import MessageBus, OutboundMessage
from devman.checkpoint.store import CheckpointStore
from devman.client.auth import CredentialResolver
from devman.client.model_client import ModelClient
from devman.config import ConsumerPolicy, Settings
from devman.core.types import AccessScope, CapabilityTier, InboundMessage
from devman.errors import PermissionDenied, UnknownSenderError
from devman.orchestrator.orchestrator import Orchestrator, RunResult, TaskRequest
from devman.routing.scope import AccessPolicy, ScopeRouter
from devman.session.session import StreamingClient
from devman.storage.tasks import TaskStore
from devman.tools.builtin import register_builtin_tools
from devman.tools.router import ToolRegistry

LOCAL_CONSUMER = ConsumerPolicy(name="local", senders={"local"}, access="full", tasks=["*"])


class AppRuntime:
    """Global runtime owning the model client, tools and orchestrator."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: StreamingClient | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        home = settings.resolve_home()
        self.store = TaskStore(home)
        self.checkpoints = CheckpointStore(home)
        self.tools = ToolRegistry()
        register_builtin_tools(self.tools, settings=settings, http_client=http_client)
        self.credentials = CredentialResolver(
            oauth_path=settings.oauth_credentials_path,
            env_var=settings.api_key_env,
            credentials_file=settings.credentials_file,
        )
        self._model_client: ModelClient | None = None
        if client is None:
            self._model_client = ModelClient(settings, self.credentials, http_client=http_client)
            client = self._model_client
        self.orchestrator = Orchestrator(
            settings,
            client=client,
            tools=self.tools,
            store=self.store,
            checkpoints=self.checkpoints,
        )
        self.router = ScopeRouter(AccessPolicy(settings.consumers or [LOCAL_CONSUMER]))

    async def __aenter__(self) -> AppRuntime:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        if self._model_client is not None:
            await self._model_client.aclose()

    async def handle_inbound(self, message: InboundMessage) -> RunResult:
        """Route one inbound message and run it. Raises on unknown senders or denied tasks."""
        routed = self.router.resolve(message)
        return await self.orchestrator.submit(routed.to_task_request())

    async def run_task(
        self,
        task: str,
        content: str,
        *,
        tier: CapabilityTier | None = None,
        interactive: bool = False,
        consumer: str = "cli",
    ) -> RunResult:
        request = TaskRequest(
            task=task,
            content=content,
            scope=AccessScope.full(),
            tier=tier,
            consumer=consumer,
            interactive=interactive,
        )
        return await self.orchestrator.submit(request)

    async def serve(self, bus: MessageBus, *, stop: asyncio.Event | None = None) -> None:
        """Consume inbound messages until ``stop`` is set, replying on the bus."""
        stop = stop or asyncio.Event()
        pending: set[asyncio.Task[None]] = set()
        logger.info("runtime.serve.start consumers={}", len(self.router.policy.consumers))
        try:
            while not stop.is_set():
                message = await bus.next_inbound(timeout_seconds=0.5)
                if message is None:
                    continue
                task = asyncio.create_task(self._reply(bus, message))
                pending.add(task)
                task.add_done_callback(pending.discard)
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("runtime.serve.stop")

    async def _reply(self, bus: MessageBus, message: InboundMessage) -> None:
        try:
            result = await self.handle_inbound(message)
        except UnknownSenderError:
            logger.warning("runtime.inbound.rejected sender={}", message.sender_id)
            return
        except PermissionDenied as exc:
            await bus.publish_outbound(
                OutboundMessage(sender_id=message.sender_id, channel=message.channel, content=str(exc), error=exc.kind)
            )
            return
        except Exception:
            logger.exception("runtime.inbound.crashed sender={} channel={}", message.sender_id, message.channel)
            await bus.publish_outbound(
                OutboundMessage(
                    sender_id=message.sender_id,
                    channel=message.channel,
                    content="Task failed: internal error",
                    error="internal_error",
                )
            )
            return
        content = result.reply if result.ok else f"Task failed: {result.error}"
        await bus.publish_outbound(
            OutboundMessage(
                sender_id=message.sender_id,
                channel=message.channel,
                session_id=result.session_id,
                content=content,
                error=None if result.ok else result.error_kind,
            )
        )
