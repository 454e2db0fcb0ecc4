"""
Draft generation: LLM client seam, prompt construction and output parsing.

The prompt builder and parser are pure functions so they can be tested
without any network access; `TextGenerator` is the only piece that talks
to a provider.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import config

logger = logging.getLogger("outreach.email_generator")

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")


class DraftParseError(ValueError):
    """The generator's output was not the JSON object we asked for."""


def get_llm_client(provider: str = None, model: str = None):
    """Get the appropriate LLM client based on config or explicit provider"""
    if provider is None:
        provider = config.LLM_PROVIDER

    if provider == "groq":
        from groq import Groq
        return Groq(api_key=config.GROQ_API_KEY), model or config.GROQ_MODEL, "groq"
    else:
        from openai import OpenAI
        return OpenAI(api_key=config.OPENAI_API_KEY), model or config.OPENAI_MODEL, "openai"


class TextGenerator:
    """generate(prompt) -> text. Provider errors propagate to the caller."""

    def __init__(self, provider: str = None, model: str = None, client=None):
        if client is not None:
            self.client, self.model, self.provider = client, model or config.GROQ_MODEL, provider or "groq"
        else:
            self.client, self.model, self.provider = get_llm_client(provider, model)

    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=config.LLM_TEMPERATURE,
        )
        return response.choices[0].message.content or ""

    async def generate(self, prompt: str) -> str:
        # SDK clients are synchronous; keep the event loop free for other jobs
        try:
            return await asyncio.to_thread(self._complete, prompt)
        except Exception as e:
            logger.error(f"LLM call failed ({self.provider}/{self.model}): {e}")
            raise


def build_draft_prompt(campaign: Dict[str, Any], lead: Dict[str, Any], follow_up_enabled: bool,
                       settings: Optional[Dict[str, Any]] = None) -> str:
    """
    Build the generation prompt for one lead.

    `settings` defaults to the campaign's settings; workers pass the lead's
    snapshot instead. The product description is passed through verbatim
    and the model is told not to go beyond it.
    """
    settings = settings if settings is not None else (campaign or {}).get("settings") or {}

    tone = settings.get("tone") or "PROFESSIONAL"
    email_length = settings.get("email_length") or "SHORT"
    description = (settings.get("description") or "").strip()
    signature = (settings.get("signature") or "").strip()
    campaign_name = str((campaign or {}).get("name") or "").strip() or "Campaign"
    lead_name = str((lead or {}).get("name") or "").strip() or "Recipient"
    lead_email = str((lead or {}).get("email") or "").strip()

    additional_info = (lead or {}).get("additional_info")
    if not isinstance(additional_info, dict):
        additional_info = {}

    additional_context = (
        f"Additional recipient context (use only if relevant): {json.dumps(additional_info)}"
        if additional_info else ""
    )
    product_context = (
        f"Product / Context you MAY reference (do not invent beyond this): {description}"
        if description else ""
    )
    signature_rule = (
        f"Use this exact signature at the end of the email:\n{signature}"
        if signature else "Do NOT add a signature."
    )

    if follow_up_enabled:
        json_shape = (
            '{"subject": "<short subject line, under 10 words>", '
            '"body": "<email body as plain text or simple HTML>", '
            '"followupSubject": "<short follow-up subject, under 10 words>", '
            '"followupBody": "<follow-up email body as plain text or simple HTML>"}'
        )
        follow_up_instructions = f"""
Also provide a follow-up email (followupSubject and followupBody). The follow-up will be sent only if the recipient has NOT replied. It should:
- Be a gentle, friendly reminder (same tone and length as above).
- Reference the initial outreach without repeating it verbatim.
- Include a clear, low-friction ask (e.g. "Would you have a few minutes to connect?").
- {signature_rule}
- Be concise and respectful."""
    else:
        json_shape = (
            '{"subject": "<short subject line, under 10 words>", '
            '"body": "<email body as plain text or simple HTML>"}'
        )
        follow_up_instructions = ""

    lines = [
        "You are writing a personalized sales outreach email.",
        "",
        f'Campaign: "{campaign_name}"',
        "Goal: outreach",
        f"Tone: {tone}",
        f"Length: {email_length}",
        "",
        f"Recipient: {lead_name} ({lead_email})",
        additional_context,
        product_context,
        "",
        "CRITICAL RULES (MUST FOLLOW):",
        "- Do NOT invent a sender name, company name, product, role, or background.",
        "- Do NOT invent features, benefits, metrics, or claims.",
        "- Use ONLY the information explicitly provided above.",
        "- If product or company context is missing, write a neutral, permission-based outreach.",
        "- Do NOT assume the recipient's needs, tools, or priorities.",
        f"- {signature_rule}",
        follow_up_instructions,
        "",
        "Respond with valid JSON only, no other text.",
        "Use exactly this shape:",
        json_shape,
        "",
        "Keep the email concise, professional, and respectful.",
    ]
    return "\n".join(lines).strip()


def parse_draft_json(raw: str, expect_follow_up: bool = False) -> Dict[str, str]:
    """
    Parse the generator output into subject/body (+ follow-up pair).

    Accepts a single JSON object, optionally wrapped in a ``` / ```json
    fence. Follow-up keys are only read when they were asked for, and only
    as a pair.
    """
    text = _FENCE_END.sub("", _FENCE_START.sub("", (raw or "").strip())).strip()
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise DraftParseError(f"LLM returned invalid JSON for draft: {e}") from e

    if not isinstance(obj, dict) or "subject" not in obj or "body" not in obj:
        raise DraftParseError("LLM draft JSON is missing subject/body")

    result = {
        "subject": str(obj.get("subject") or "").strip(),
        "body": str(obj.get("body") or "").strip(),
    }
    if expect_follow_up and "followupSubject" in obj and "followupBody" in obj:
        result["followup_subject"] = str(obj.get("followupSubject") or "").strip()
        result["followup_body"] = str(obj.get("followupBody") or "").strip()
    return result
