"""
Assistant Collaborator

DESIGN DECISION: The assistant is a PROPOSER, never an executor.
It turns a free-text command plus a read-only snapshot of the ledger into
a list of action dicts. Those dicts are untrusted: they go through
`ActionGateway` like any other input, and destructive ones still need the
user's confirmation.

CRITICAL BOUNDARIES:
- CAN: Suggest buckets, allocations, moves, rules and merchant mappings
- CANNOT: Touch storage or the ledger
- CANNOT: See anything beyond the context it is handed
- MUST: Reply in the {actions, summary, warnings} shape
"""

import json
from abc import ABC, abstractmethod
from typing import Optional

import google.generativeai as genai
import structlog

from bucketpilot.config import GeminiSettings, get_settings
from bucketpilot.ledger import LedgerService
from bucketpilot.models.actions import (
    ActionType,
    AssistantContext,
    AssistantResponse,
    BucketSummary,
    TransactionSummary,
)


logger = structlog.get_logger(__name__)


class AssistantError(Exception):
    """The assistant backend failed to produce a reply."""
    pass


class AssistantInterface(ABC):
    @abstractmethod
    async def propose_actions(
        self,
        command: str,
        context: AssistantContext,
    ) -> AssistantResponse:
        """
        Propose actions for a command.

        Raises:
            AssistantError: If the backend could not be reached
        """
        pass


async def build_assistant_context(
    ledger: LedgerService,
    recent_limit: int = 20,
) -> AssistantContext:
    """Snapshot the ledger into the shape the assistant is shown."""
    snapshot = await ledger.snapshot()
    recent = await ledger.storage.list_transactions(limit=recent_limit)
    return AssistantContext(
        unassigned_balance=snapshot.unassigned_balance(),
        buckets=[
            BucketSummary(id=state.bucket.id, name=state.bucket.name, available=state.available)
            for state in snapshot.bucket_states()
        ],
        recent_transactions=[
            TransactionSummary(
                id=t.id,
                merchant_name=t.merchant_name or t.description,
                amount=t.amount,
                date=t.date,
            )
            for t in recent
        ],
    )


def parse_assistant_response(text: str) -> AssistantResponse:
    """
    Pull the JSON object out of a model reply.

    Models wrap JSON in prose or code fences often enough that the first
    '{' to the last '}' is taken. Anything unparseable yields an empty
    proposal with a warning rather than an exception.
    """
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        return AssistantResponse(warnings=["Assistant reply contained no JSON object"])

    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError:
        return AssistantResponse(warnings=["Assistant reply was not valid JSON"])
    if not isinstance(data, dict):
        return AssistantResponse(warnings=["Assistant reply was not a JSON object"])

    actions = data.get("actions") or []
    warnings = data.get("warnings") or []
    if not isinstance(actions, list):
        actions = []
        warnings = list(warnings) + ["Assistant 'actions' was not a list"]

    return AssistantResponse(
        actions=[a for a in actions if isinstance(a, dict)],
        summary=str(data.get("summary") or ""),
        warnings=[str(w) for w in warnings],
    )


class GeminiAssistant(AssistantInterface):
    """
    Assistant backed by Gemini.

    The prompt lists the allowed action vocabulary and the context; the
    reply is parsed with `parse_assistant_response`.
    """

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    def build_prompt(self, command: str, context: AssistantContext) -> str:
        vocabulary = ", ".join(t.value for t in ActionType)
        context_json = json.dumps(context.to_prompt_dict(), indent=2)
        return f"""You are the assistant of an envelope-budgeting app. Money is split into
buckets; unassigned money sits in a pool until it is allocated.

User command: "{command}"

Current ledger (read-only):
{context_json}

Respond with ONLY a JSON object in this exact format:
{{"actions": [...], "summary": "one sentence", "warnings": []}}

Allowed action types: {vocabulary}

Action fields:
- create_bucket: name, targetAmount?, targetType? (monthlyTarget | byDateGoal | none), priority?
- update_bucket: bucketId (or name), updates {{...}}
- delete_bucket: bucketId
- allocate: bucketId, amount, source? {{bucketId}}
- move: fromBucketId, toBucketId, amount
- create_rule: name, triggerType, priority?, conditions?, actions [{{type: allocateFixed|allocatePercent|fillToTarget, bucketId, amount?|percent?}}]
- update_rule: ruleId, updates {{...}}
- create_merchant_mapping: merchantContains, bucketId

Important:
- Use bucket ids exactly as listed above
- Never allocate more than the unassigned balance
- If the command is unclear, return no actions and explain in warnings"""

    async def propose_actions(
        self,
        command: str,
        context: AssistantContext,
    ) -> AssistantResponse:
        prompt = self.build_prompt(command, context)
        try:
            response = await self._model.generate_content_async(prompt)
            text = response.text.strip()
        except Exception as e:
            logger.error("assistant_call_failed", error=str(e))
            raise AssistantError(f"Gemini request failed: {e}") from e

        proposal = parse_assistant_response(text)
        logger.info(
            "assistant_proposed",
            action_count=len(proposal.actions),
            warnings=len(proposal.warnings),
        )
        return proposal
