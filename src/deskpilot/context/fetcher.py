"""
Deskpilot Context Fetcher

On-demand resolution of a tenant's business information. Instead of
stuffing the whole business document into every prompt, the model asks
for specific dotted keys (``policies.returns``, ``contact.phone``...)
and gets back only those sections.

A per-turn loop guard bounds the fetch/re-ask cycle: after
``max_context_fetches`` rounds the full document is injected and no
further fetches are honored.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from deskpilot.core.models import Client
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.context")

# Dotted request key -> path inside business_info. Empty path is the whole document.
CONTEXT_MAP: dict[str, tuple[str, ...]] = {
    "policies.returns": ("policies", "returns"),
    "policies.shipping": ("policies", "shipping"),
    "policies.privacy": ("policies", "privacy"),
    "policies.terms": ("policies", "terms"),
    "policies": ("policies",),
    "contact.phone": ("contact", "phone"),
    "contact.email": ("contact", "email"),
    "contact.address": ("contact", "address"),
    "contact.hours": ("contact", "hours"),
    "contact.full": ("contact",),
    "about.description": ("about", "description"),
    "about.history": ("about", "history"),
    "about.team": ("about", "team"),
    "about.full": ("about",),
    "faqs": ("faqs",),
    "ai_instructions": ("ai_instructions",),
    "all": (),
}

_POLICY_TITLES = (
    ("returns", "Return Policy"),
    ("shipping", "Shipping Policy"),
    ("privacy", "Privacy Policy"),
    ("terms", "Terms of Service"),
)

_CONTACT_LABELS = (
    ("phone", "Phone"),
    ("email", "Email"),
    ("address", "Address"),
    ("hours", "Hours"),
)

UNAVAILABLE_HINT = (
    "Please inform the customer that this information is not available "
    "and suggest they contact the business directly."
)


class ContextFetchResult(BaseModel):
    """Outcome of resolving a list of context keys."""
    success: bool = True
    context: dict[str, Any] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)

    @property
    def found_any(self) -> bool:
        return bool(self.context)


def valid_context_keys() -> list[str]:
    return list(CONTEXT_MAP)


def _resolve(document: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = document
    for segment in path:
        if not isinstance(value, dict):
            return None
        value = value.get(segment)
    return value


def fetch_context(client: Client, keys: list[str] | None) -> ContextFetchResult:
    """Resolve each requested key against the client's business info.

    Unknown keys and keys with no configured value are reported in
    ``missing``; ``success`` is False if anything is missing.
    """
    if not keys:
        return ContextFetchResult()

    business_info = client.business_info or {}
    context: dict[str, Any] = {}
    missing: list[str] = []

    for key in keys:
        path = CONTEXT_MAP.get(key)
        if path is None:
            missing.append(key)
            continue
        value = _resolve(business_info, path)
        if value is None:
            missing.append(key)
        else:
            context[key] = value

    if missing:
        logger.info("Context keys not found: %s", ", ".join(missing), extra={"client_id": client.id})

    return ContextFetchResult(success=not missing, context=context, missing=missing)


def fetch_full_context(client: Client) -> dict[str, Any]:
    return dict(client.business_info or {})


# ─── Prompt formatting ───────────────────────────────────────

def _format_policies(policies: dict[str, Any]) -> str:
    out = ""
    for field, title in _POLICY_TITLES:
        if policies.get(field):
            out += f"\n\n## {title}\n{policies[field]}"
    return out


def _format_contact(contact: dict[str, Any]) -> str:
    lines = [f"{label}: {contact[field]}" for field, label in _CONTACT_LABELS if contact.get(field)]
    if not lines:
        return ""
    return "\n\n## Contact Information\n" + "\n".join(lines)


def _format_about(about: dict[str, Any], client_name: str) -> str:
    out = f"\n\n## About {client_name}"
    if about.get("description"):
        out += f"\n{about['description']}"
    if about.get("history"):
        out += f"\n\n**History:** {about['history']}"
    if about.get("team"):
        out += f"\n\n**Team:** {about['team']}"
    return out


def _format_faqs(faqs: Any) -> str:
    if not isinstance(faqs, list) or not faqs:
        return ""
    entries = []
    for i, faq in enumerate(faqs, start=1):
        faq = faq if isinstance(faq, dict) else {}
        entries.append(f"{i}. Q: {faq.get('question', '')}\n   A: {faq.get('answer', '')}")
    return "\n\n## Frequently Asked Questions\n" + "\n".join(entries)


def _format_business_info(info: dict[str, Any], client_name: str) -> str:
    out = ""
    if isinstance(info.get("about"), dict):
        out += _format_about(info["about"], client_name)
    if isinstance(info.get("contact"), dict):
        out += _format_contact(info["contact"])
    if isinstance(info.get("policies"), dict):
        out += _format_policies(info["policies"])
    out += _format_faqs(info.get("faqs"))
    if info.get("ai_instructions"):
        out += f"\n\n## Custom Instructions\n{info['ai_instructions']}"
    return out


def format_context_for_prompt(context: dict[str, Any], client_name: str) -> str:
    """Render fetched context as markdown sections for a re-prompt."""
    if isinstance(context.get("all"), dict):
        return _format_business_info(context["all"], client_name)

    out = ""

    individual_policies = {
        field: context[f"policies.{field}"]
        for field, _ in _POLICY_TITLES
        if context.get(f"policies.{field}")
    }
    out += _format_policies(individual_policies)
    if isinstance(context.get("policies"), dict) and "policies.returns" not in context:
        out += _format_policies(context["policies"])

    if isinstance(context.get("contact.full"), dict):
        out += _format_contact(context["contact.full"])
    else:
        out += _format_contact({
            field: context.get(f"contact.{field}") for field, _ in _CONTACT_LABELS
        })

    if isinstance(context.get("about.full"), dict):
        out += _format_about(context["about.full"], client_name)
    else:
        if context.get("about.description"):
            out += f"\n\n## About {client_name}\n{context['about.description']}"
        if context.get("about.history"):
            out += f"\n\n**History:** {context['about.history']}"
        if context.get("about.team"):
            out += f"\n\n**Team:** {context['about.team']}"

    out += _format_faqs(context.get("faqs"))

    if context.get("ai_instructions"):
        out += f"\n\n## Custom Instructions\n{context['ai_instructions']}"

    return out


def format_missing_context_note(missing: list[str], found_any: bool) -> str:
    """Tell the model which requested keys are not configured."""
    if not missing:
        return ""
    keys = ", ".join(missing)
    if not found_any:
        return (
            "\n\n## Context Not Available\n"
            f"The following information was requested but is not configured: {keys}. {UNAVAILABLE_HINT}"
        )
    return (
        "\n\n## Note: The following information was requested but is not configured "
        f"for this business: {keys}. {UNAVAILABLE_HINT}"
    )


def build_context_block(result: ContextFetchResult, client_name: str) -> str:
    """Formatted context plus the missing-keys note, ready to append to a prompt."""
    if result.missing and not result.found_any:
        return format_missing_context_note(result.missing, found_any=False)
    return format_context_for_prompt(result.context, client_name) + format_missing_context_note(
        result.missing, found_any=True
    )


# ─── Loop guard ──────────────────────────────────────────────

class ContextLoopGuard:
    """Counts context-fetch rounds within one user turn.

    The first ``max_fetches`` requests are honored. Any request after
    that trips the guard: the caller injects the full document instead.
    """

    def __init__(self, max_fetches: int = 2):
        self._max_fetches = max_fetches
        self._count = 0
        self._tripped = False

    @property
    def count(self) -> int:
        return self._count

    @property
    def tripped(self) -> bool:
        return self._tripped

    def allow_fetch(self) -> bool:
        """Record a fetch request. False means inject full context instead."""
        if self._count >= self._max_fetches:
            self._tripped = True
            return False
        self._count += 1
        return True
