import pytest

from devman.config import ConsumerPolicy
from devman.core.types import AccessScope, Attachment, CapabilityTier, InboundMessage
from devman.errors import PermissionDenied, UnknownSenderError
from devman.routing.scope import AccessPolicy, ScopeRouter, render_inbound

TELEGRAM = ConsumerPolicy(
    name="telegram",
    senders={"u1", "u2"},
    access="scoped",
    tasks=["alpha", "beta"],
    default_task="beta",
    tier=CapabilityTier.CHEAP,
)
ADMIN = ConsumerPolicy(name="admin", senders={"root"}, access="full")
DISCORD = ConsumerPolicy(name="discord", senders={"u1"}, tasks=["gamma"])


def _router() -> ScopeRouter:
    return ScopeRouter(AccessPolicy([TELEGRAM, ADMIN, DISCORD]))


def test_unknown_sender_is_rejected() -> None:
    with pytest.raises(UnknownSenderError) as excinfo:
        _router().resolve(InboundMessage(sender_id="stranger", content="hi"))
    assert excinfo.value.sender_id == "stranger"


def test_scoped_consumer_uses_default_task_and_restricted_scope() -> None:
    routed = _router().resolve(InboundMessage(sender_id="u2", content="hi"))

    assert routed.task == "beta"
    assert routed.scope == AccessScope.restricted({"alpha", "beta"})
    request = routed.to_task_request()
    assert request.tier is CapabilityTier.CHEAP
    assert request.resolved_session_id() == "telegram:beta"
    assert request.interactive


def test_task_hint_outside_scope_is_denied() -> None:
    with pytest.raises(PermissionDenied) as excinfo:
        _router().resolve(InboundMessage(sender_id="u2", content="hi", task_hint="gamma"))
    assert excinfo.value.task == "gamma"


def test_invalid_task_hint_is_denied() -> None:
    with pytest.raises(PermissionDenied):
        _router().resolve(InboundMessage(sender_id="root", content="hi", task_hint="../etc"))


def test_full_access_accepts_any_task() -> None:
    routed = _router().resolve(InboundMessage(sender_id="root", content="hi", task_hint="anything"))
    assert routed.scope.is_full
    assert routed.task == "anything"

    fallback = _router().resolve(InboundMessage(sender_id="root", content="hi"))
    assert fallback.task == "general"


def test_wildcard_task_list_means_full_access() -> None:
    policy = ConsumerPolicy(name="ops", senders={"ops"}, tasks=["*"])
    assert AccessPolicy.scope_for(policy).is_full


def test_channel_selects_between_consumers_of_one_sender() -> None:
    router = _router()
    assert router.resolve(InboundMessage(sender_id="u1", content="x", channel="discord")).task == "gamma"
    assert router.resolve(InboundMessage(sender_id="u1", content="x", channel="telegram")).task == "beta"
    assert router.resolve(InboundMessage(sender_id="u1", content="x")).consumer.name == "telegram"


def test_attachments_are_rendered_as_descriptor_lines() -> None:
    message = InboundMessage(
        sender_id="u1",
        content="please check this",
        attachments=(
            Attachment(path="/tmp/in/report.pdf", mime_type="application/pdf", name="report.pdf", size=2048),
            Attachment(path="/tmp/in/photo.jpg", mime_type="image/jpeg"),
        ),
    )

    assert render_inbound(message).splitlines() == [
        "please check this",
        "[File downloaded: report.pdf at /tmp/in/report.pdf (application/pdf, 2048 bytes)]",
        "[File downloaded: /tmp/in/photo.jpg (image/jpeg)]",
    ]
