"""Message templates and the renderer that fills them.

Templates live in an explicit registry keyed by id and grouped by channel.
Placeholders use one syntax only, ``{{key}}``, substituted in a single
pass: missing variables render as an empty string, never as the literal
placeholder.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from noshow.domain import ChannelType

__all__ = [
    "DEFAULT_TEMPLATES",
    "MessageTemplate",
    "TemplateRenderer",
    "TemplateValidation",
]

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

MAX_LENGTH = 4096  # WhatsApp body limit
MIN_LENGTH = 10

KNOWN_VARIABLES = frozenset(
    {
        "clientName",
        "serviceName",
        "appointmentDate",
        "appointmentTime",
        "serviceValue",
        "businessName",
        "businessPhone",
        "businessAddress",
        "professionalName",
        "bonusPoints",
        "percentage",
        "amount",
        "deadline",
        "value",
        "rewardType",
    }
)

_SAMPLE_VARIABLES: dict[str, str] = {
    "clientName": "Maria Silva",
    "serviceName": "Cut + Blow-dry",
    "appointmentDate": "15/12/2026",
    "appointmentTime": "14:30",
    "serviceValue": "85.00",
    "businessName": "Studio Bella",
    "businessPhone": "(11) 99999-9999",
    "businessAddress": "Rua das Flores, 123",
    "professionalName": "Ana Costa",
    "bonusPoints": "20",
    "percentage": "50",
    "amount": "42.50",
    "deadline": "4",
    "value": "10",
    "rewardType": "discount",
}


@dataclass(frozen=True)
class MessageTemplate:
    id: str
    channel: ChannelType
    body: str
    subject: str = ""

    @property
    def variables(self) -> frozenset[str]:
        return frozenset(PLACEHOLDER.findall(self.body))


@dataclass(frozen=True)
class TemplateValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    missing_variables: list[str] = field(default_factory=list)


DEFAULT_TEMPLATES: tuple[MessageTemplate, ...] = (
    # ── WhatsApp ─────────────────────────────────────────────
    MessageTemplate(
        "critical_confirmation_whatsapp",
        ChannelType.WHATSAPP,
        "*Confirmation required* - {{clientName}}\n\n"
        "Your {{serviceName}} appointment is booked for {{appointmentDate}} "
        "at {{appointmentTime}}.\n\n"
        'Reply "CONFIRM" to keep your slot. Unconfirmed appointments are '
        "cancelled automatically.\n\n"
        "{{businessName}} - {{businessPhone}}",
    ),
    MessageTemplate(
        "high_risk_reminder_whatsapp",
        ChannelType.WHATSAPP,
        "Appointment reminder - {{clientName}}\n\n"
        "{{serviceName}}\n{{appointmentDate}} at {{appointmentTime}}\n"
        "Price: {{serviceValue}}\n\n"
        "Bonus: earn {{bonusPoints}} extra points for showing up!\n\n"
        "To confirm, reply to this message or call {{businessPhone}}\n\n"
        "{{businessName}}",
    ),
    MessageTemplate(
        "welcome_first_client",
        ChannelType.WHATSAPP,
        "Welcome to {{businessName}}, {{clientName}}!\n\n"
        "Your first appointment:\n{{appointmentDate}} at {{appointmentTime}}\n"
        "{{serviceName}}\n\n"
        "Address: {{businessAddress}}\nQuestions: {{businessPhone}}\n\n"
        "Please arrive 10 minutes early.",
    ),
    # ── SMS ──────────────────────────────────────────────────
    MessageTemplate(
        "high_risk_reminder_sms",
        ChannelType.SMS,
        "{{businessName}}: reminder for {{serviceName}} on {{appointmentDate}} "
        "at {{appointmentTime}}. Confirm: {{businessPhone}}",
    ),
    MessageTemplate(
        "first_client_reminder",
        ChannelType.SMS,
        "{{businessName}}: your first appointment is today at {{appointmentTime}}! "
        "We're expecting you. Questions: {{businessPhone}}",
    ),
    # ── Email ────────────────────────────────────────────────
    MessageTemplate(
        "high_risk_reminder_email",
        ChannelType.EMAIL,
        "Hello {{clientName}},\n\n"
        "This is an important reminder about your appointment:\n\n"
        "Date: {{appointmentDate}}\nTime: {{appointmentTime}}\n"
        "Service: {{serviceName}}\nPrice: {{serviceValue}}\n\n"
        "IMPORTANT POLICIES:\n"
        "- Cancel at least 4h in advance\n"
        "- No-shows are charged in full\n"
        "- Confirmation is required up to 2h before\n\n"
        "To confirm, reply to this email or call {{businessPhone}}\n\n"
        "{{businessName}}",
        subject="Appointment confirmation - {{serviceName}}",
    ),
    # ── Phone call scripts ───────────────────────────────────
    MessageTemplate(
        "critical_confirmation_call",
        ChannelType.PHONE_CALL,
        "Hello {{clientName}}, this is {{businessName}} calling to confirm your "
        "{{serviceName}} appointment on {{appointmentDate}} at {{appointmentTime}}.",
    ),
    MessageTemplate(
        "high_value_confirmation",
        ChannelType.PHONE_CALL,
        "Hello {{clientName}}, {{businessName}} here. We have reserved "
        "{{serviceName}} ({{serviceValue}}) for you on {{appointmentDate}} at "
        "{{appointmentTime}}. Can you confirm you will attend?",
    ),
    # ── Payment requests ─────────────────────────────────────
    MessageTemplate(
        "advance_payment_required",
        ChannelType.PAYMENT_REQUEST,
        "{{businessName}}: to secure your {{serviceName}} appointment on "
        "{{appointmentDate}}, please pay {{percentage}}% in advance ({{amount}}).",
    ),
    MessageTemplate(
        "partial_advance_payment",
        ChannelType.PAYMENT_REQUEST,
        "{{businessName}}: pay {{percentage}}% of {{serviceName}} now ({{amount}}) "
        "and skip the line on {{appointmentDate}}.",
    ),
    # ── Incentives ───────────────────────────────────────────
    MessageTemplate(
        "loyalty_point_bonus",
        ChannelType.INCENTIVE_OFFER,
        "{{clientName}}, show up on {{appointmentDate}} and earn "
        "{{bonusPoints}} bonus loyalty points at {{businessName}}!",
    ),
    MessageTemplate(
        "attendance_reward",
        ChannelType.INCENTIVE_OFFER,
        "{{clientName}}, attend your {{serviceName}} appointment and get a "
        "{{value}}% {{rewardType}} on your next visit!",
    ),
    # ── Confirmation requirements ────────────────────────────
    MessageTemplate(
        "mandatory_confirmation",
        ChannelType.CONFIRMATION_REQUIRED,
        "{{clientName}}, please confirm your appointment on {{appointmentDate}} "
        "at {{appointmentTime}} at least {{deadline}}h in advance or it will be "
        "released. {{businessName}} - {{businessPhone}}",
    ),
)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


class TemplateRenderer:
    """Looks templates up by id and substitutes ``{{key}}`` placeholders."""

    def __init__(self, templates: Iterable[MessageTemplate] = DEFAULT_TEMPLATES) -> None:
        self._templates: dict[str, MessageTemplate] = {}
        for template in templates:
            if template.id in self._templates:
                logger.warning("Duplicate template id %s, keeping the first", template.id)
                continue
            self._templates[template.id] = template

    def get(self, template_id: str) -> MessageTemplate | None:
        return self._templates.get(template_id)

    def by_channel(self, channel: ChannelType) -> list[MessageTemplate]:
        return [t for t in self._templates.values() if t.channel == channel]

    def render(self, template_id: str, variables: Mapping[str, Any]) -> str:
        """Render *template_id*; unknown ids yield a generic fallback."""
        template = self._templates.get(template_id)
        if template is None:
            logger.warning("Template %s not found, using fallback", template_id)
            return f"Message about your appointment for {_stringify(variables.get('clientName'))}"
        return self.substitute(template.body, variables)

    def render_subject(self, template_id: str, variables: Mapping[str, Any]) -> str:
        template = self._templates.get(template_id)
        if template is None or not template.subject:
            return ""
        return self.substitute(template.subject, variables)

    @staticmethod
    def substitute(text: str, variables: Mapping[str, Any]) -> str:
        return PLACEHOLDER.sub(lambda m: _stringify(variables.get(m.group(1))), text)

    @staticmethod
    def validate(body: str, required: Iterable[str] = ()) -> TemplateValidation:
        """Check placeholders against the known variable set and length limits."""
        errors: list[str] = []
        used = set(PLACEHOLDER.findall(body))

        unknown = sorted(used - KNOWN_VARIABLES)
        if unknown:
            errors.append(f"Unknown variables: {', '.join(unknown)}")

        missing = [name for name in required if name not in used]
        if missing:
            errors.append(f"Missing required variables: {', '.join(missing)}")

        if len(body) > MAX_LENGTH:
            errors.append(f"Content too long (max {MAX_LENGTH} characters)")
        if len(body) < MIN_LENGTH:
            errors.append(f"Content too short (min {MIN_LENGTH} characters)")

        return TemplateValidation(
            is_valid=not errors, errors=errors, missing_variables=missing
        )

    def preview(self, template_id: str) -> str:
        """Render a template with sample data."""
        return self.render(template_id, _SAMPLE_VARIABLES)
