"""Map inbound messages to a task and an access scope."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from devman.config import ConsumerPolicy
from devman.core.types import AccessScope, Attachment, InboundMessage
from devman.errors import PermissionDenied, UnknownSenderError
from devman.orchestrator.orchestrator import TaskRequest
from devman.storage.tasks import validate_task

ALL_TASKS = "*"
DEFAULT_TASK = "general"


def render_attachment(attachment: Attachment) -> str:
    size = f", {attachment.size} bytes" if attachment.size is not None else ""
    label = f"{attachment.name} at " if attachment.name else ""
    return f"[File downloaded: {label}{attachment.path} ({attachment.mime_type}{size})]"


def render_inbound(message: InboundMessage) -> str:
    """Message text followed by one descriptor line per attachment."""
    lines = [message.content] if message.content else []
    lines.extend(render_attachment(attachment) for attachment in message.attachments)
    return "\n".join(lines)


@dataclass(frozen=True)
class RoutedRequest:
    consumer: ConsumerPolicy
    task: str
    scope: AccessScope
    content: str

    def to_task_request(self) -> TaskRequest:
        return TaskRequest(
            task=self.task,
            content=self.content,
            scope=self.scope,
            tier=self.consumer.tier,
            consumer=self.consumer.name,
            interactive=self.consumer.interactive,
        )


class AccessPolicy:
    def __init__(self, consumers: Sequence[ConsumerPolicy]) -> None:
        self._consumers = list(consumers)

    @property
    def consumers(self) -> list[ConsumerPolicy]:
        return list(self._consumers)

    def consumer_for(self, sender_id: str, channel: str | None = None) -> ConsumerPolicy:
        matches = [consumer for consumer in self._consumers if sender_id in consumer.senders]
        if channel is not None:
            on_channel = [consumer for consumer in matches if consumer.name == channel]
            matches = on_channel or matches
        if not matches:
            raise UnknownSenderError(sender_id)
        return matches[0]

    @staticmethod
    def scope_for(consumer: ConsumerPolicy) -> AccessScope:
        if consumer.access == "full" or ALL_TASKS in consumer.tasks:
            return AccessScope.full()
        return AccessScope.restricted(consumer.tasks)


class ScopeRouter:
    """Resolve {consumer, task, scope} before any session is touched."""

    def __init__(self, policy: AccessPolicy, *, default_task: str = DEFAULT_TASK) -> None:
        self.policy = policy
        self._default_task = default_task

    def _task_for(self, consumer: ConsumerPolicy, hint: str | None) -> str:
        if hint:
            return hint
        if consumer.default_task:
            return consumer.default_task
        named = [task for task in consumer.tasks if task != ALL_TASKS]
        return named[0] if named else self._default_task

    def resolve(self, message: InboundMessage) -> RoutedRequest:
        consumer = self.policy.consumer_for(message.sender_id, message.channel)
        scope = self.policy.scope_for(consumer)
        task = self._task_for(consumer, message.task_hint.strip() if message.task_hint else None)
        try:
            validate_task(task)
        except ValueError as exc:
            raise PermissionDenied(task, str(exc)) from exc
        if not scope.allows(task):
            logger.warning(
                "routing.denied sender={} consumer={} task={}",
                message.sender_id,
                consumer.name,
                task,
            )
            raise PermissionDenied(task)
        logger.info("routing.resolved consumer={} task={} scope={}", consumer.name, task, scope.describe())
        return RoutedRequest(consumer=consumer, task=task, scope=scope, content=render_inbound(message))
