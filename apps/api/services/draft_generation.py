"""LLM draft generation for letters."""

import asyncio
import logging
from typing import Any, Dict, Optional

from openai import OpenAI

from config import settings
from services.errors import GenerationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are an experienced attorney drafting formal legal correspondence.
Write a complete, professional letter of the requested type using only the facts provided.
Do not invent facts, case numbers or statutes that were not supplied.
Use a formal tone, a clear statement of the issue, the requested remedy and any deadline.
Return only the letter body as plain text.
"""


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def build_prompt(intake: Dict[str, Any], letter_type: str) -> str:
    lines = [f"Letter type: {letter_type}", ""]
    lines.append(f"From: {intake.get('sender_name')}, {intake.get('sender_address')}")
    lines.append(f"To: {intake.get('recipient_name')}, {intake.get('recipient_address')}")
    if intake.get("incident_date"):
        lines.append(f"Incident date: {intake['incident_date']}")
    lines.append("")
    lines.append(f"Issue: {intake.get('issue_description')}")
    lines.append(f"Desired outcome: {intake.get('desired_outcome')}")
    if intake.get("amount_demanded") is not None:
        lines.append(f"Amount demanded: ${float(intake['amount_demanded']):,.2f}")
    if intake.get("deadline_date"):
        lines.append(f"Response deadline: {intake['deadline_date']}")
    if intake.get("additional_details"):
        lines.append(f"Additional details: {intake['additional_details']}")
    for key, value in (intake.get("extra_attributes") or {}).items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def _fallback_draft(intake: Dict[str, Any], letter_type: str) -> str:
    deadline = intake.get("deadline_date") or "within fourteen (14) days of the date of this letter"
    return "\n\n".join(
        [
            f"RE: {letter_type}",
            f"Dear {intake.get('recipient_name')},",
            f"I write on behalf of {intake.get('sender_name')} regarding the following matter: "
            f"{intake.get('issue_description')}",
            f"We request the following: {intake.get('desired_outcome')}",
            f"Please respond by {deadline}.",
            f"Sincerely,\n{intake.get('sender_name')}",
        ]
    )


def _generate_sync(intake: Dict[str, Any], letter_type: str) -> str:
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        logger.warning("Using fallback letter template (OPENAI_API_KEY not configured).")
        return _fallback_draft(intake, letter_type)

    response = client.chat.completions.create(
        model=settings.OPENAI_MODEL,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(intake, letter_type)},
        ],
        temperature=0.4,
        max_tokens=2000,
    )
    return response.choices[0].message.content or ""


async def generate_draft(intake: Dict[str, Any], letter_type: str) -> str:
    """
    Produce draft text for a letter.

    Raises GenerationError on provider failure or an empty draft. Timeouts are
    applied by the caller.
    """
    try:
        content = await asyncio.to_thread(_generate_sync, intake, letter_type)
    except GenerationError:
        raise
    except Exception as exc:
        raise GenerationError(f"Draft generation failed: {exc}") from exc

    content = (content or "").strip()
    if not content:
        raise GenerationError("Draft generation returned an empty letter.")
    return content
