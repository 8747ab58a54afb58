# /mya_recovery/services/template_service.py

import re
import logging
from typing import Any, Dict, List, Optional

from mya_recovery.config import strings
from mya_recovery.config.settings import settings
from mya_recovery.models.domain import CartSession, RecoveryMethod, RecoveryTemplate
from mya_recovery.services.db_service import db_service

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")
DISCOUNT_RATE = 0.90
FINAL_RATE = 0.85


def format_currency(value: float) -> str:
    return f"{strings.CURRENCY_PREFIX} {round(value, 2):.2f}"


def frequency_label(frequency: Optional[str]) -> str:
    return strings.FREQUENCY_MONTHLY_LABEL if frequency == "monthly" else strings.FREQUENCY_YEARLY_LABEL


def build_variables(session: CartSession, plan: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """The full substitution set for a recovery message about `session`."""
    amount = float(session.amount or 0)
    return {
        "user_name": session.user_name or strings.DEFAULT_USER_NAME,
        "plan_name": (plan or {}).get("name") or strings.DEFAULT_PLAN_NAME,
        "amount": format_currency(amount),
        "frequency": frequency_label(session.frequency),
        "original_amount": format_currency(amount),
        "discount_amount": format_currency(amount * DISCOUNT_RATE),
        "final_amount": format_currency(amount * FINAL_RATE),
        "checkout_url": f"{settings.frontend_url}/checkout?session={session.session_id}",
    }


def render_template(content: str, variables: Dict[str, str]) -> str:
    """Replaces every {{name}} (spaces inside the braces allowed) whose name is known."""
    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        return variables[key] if key in variables else match.group(0)

    return PLACEHOLDER_PATTERN.sub(_substitute, content)


def select_template(templates: List[RecoveryTemplate], attempt_number: int) -> Optional[RecoveryTemplate]:
    """
    Picks the template for an attempt.

    Templates are keyed by their explicit `attempt_number`. Older rows that
    have none are matched by the attempt number appearing as a whole number
    in the name, so "Tentativa 11" is never chosen for attempt 1.
    """
    if any(t.attempt_number is not None for t in templates):
        return next((t for t in templates if t.attempt_number == attempt_number), None)

    token = re.compile(rf"(?<!\d){attempt_number}(?!\d)")
    return next((t for t in templates if token.search(t.name)), None)


def discount_percentage(attempt_number: int) -> int:
    if attempt_number == 1:
        return 10
    if attempt_number == 2:
        return 15
    return 20


def default_content(template_type: str, attempt_number: int, max_attempts: int) -> str:
    urgency = strings.LAST_CHANCE_LABEL if attempt_number == max_attempts else strings.OFFER_LABEL
    greeting = strings.EMAIL_GREETING if template_type == RecoveryMethod.EMAIL.value else strings.WHATSAPP_GREETING
    return strings.RECOVERY_MESSAGE_TEMPLATE.format(
        greeting=greeting, urgency=urgency, discount=discount_percentage(attempt_number),
    )


class TemplateService:
    async def get_active_templates(self, template_type: str = RecoveryMethod.WHATSAPP.value) -> List[RecoveryTemplate]:
        docs = await db_service.get_templates(template_type=template_type, active_only=True)
        return [RecoveryTemplate(**doc) for doc in docs]

    async def list_templates(self) -> List[Dict[str, Any]]:
        return await db_service.get_templates()

    async def sync_templates(self, max_attempts: int) -> Dict[str, Any]:
        """
        Makes sure a WhatsApp and an email template named "Tentativa N" exist
        for every attempt up to `max_attempts`, and removes templates for
        attempts beyond it.
        """
        existing = await db_service.get_templates()
        results: Dict[str, Any] = {"created": 0, "deleted": 0, "errors": []}

        to_create = []
        for attempt in range(1, max_attempts + 1):
            name = strings.TEMPLATE_NAME_FORMAT.format(attempt=attempt)
            for template_type in (RecoveryMethod.WHATSAPP.value, RecoveryMethod.EMAIL.value):
                present = any(
                    t.get("name") == name and t.get("attempt_number") == attempt and t.get("type") == template_type
                    for t in existing
                )
                if not present:
                    to_create.append({
                        "name": name,
                        "type": template_type,
                        "attempt_number": attempt,
                        "content": default_content(template_type, attempt, max_attempts),
                        "is_active": True,
                    })

        to_delete = [
            t["id"] for t in existing
            if t.get("attempt_number") is not None and t["attempt_number"] > max_attempts
        ]

        if to_create:
            try:
                results["created"] = await db_service.insert_templates(to_create)
            except Exception as e:
                logger.error(f"Failed to create recovery templates: {e}", exc_info=True)
                results["errors"].append(f"Failed to create templates: {e}")

        if to_delete:
            try:
                results["deleted"] = await db_service.delete_templates(to_delete)
            except Exception as e:
                logger.error(f"Failed to delete recovery templates: {e}", exc_info=True)
                results["errors"].append(f"Failed to delete templates: {e}")

        logger.info(f"Template sync for {max_attempts} attempts: {results['created']} created, {results['deleted']} deleted")
        return results


# Globally accessible instance
template_service = TemplateService()
