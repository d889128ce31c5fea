import json
import httpx
import logging
from dataclasses import dataclass, field
from typing import Protocol

from clinicdesk.knowledge import KnowledgeBase
from clinicdesk.prompts import get_system_prompt
from clinicdesk.session import CallContext, Participant

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
HISTORY_WINDOW = 12

FALLBACK_REPLY = "Sorry, I didn't quite catch that. Could you say that again?"


@dataclass
class TurnProposal:
    """What the language model proposes for this turn: a reply plus state changes.

    Every field except ``reply`` is optional; None means "no change". Proposals
    are untrusted and pass through the guards before anything is applied.
    """

    reply: str = ""
    caller_name: str | None = None
    caller_email: str | None = None
    is_new_patient: bool | None = None
    time_preference: str | None = None
    request_slots: bool = False
    booking_confirmed: bool = False
    selected_slot_index: int | None = None
    is_group_booking: bool | None = None
    group_participants: list[Participant] = field(default_factory=list)
    intent: str = "other"
    reschedule_confirmed: bool = False
    cancel_confirmed: bool = False
    notes: str | None = None
    end_call: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "TurnProposal":
        participants = []
        for p in data.get("group_participants") or []:
            if isinstance(p, dict) and p.get("name"):
                participants.append(Participant(str(p["name"]).strip(), str(p.get("relation") or "")))
            elif isinstance(p, str) and p.strip():
                participants.append(Participant(p.strip()))

        index = data.get("selected_slot_index")
        try:
            index = int(index) if index is not None else None
        except (TypeError, ValueError):
            index = None

        def _opt_str(key: str) -> str | None:
            value = data.get(key)
            return str(value).strip() if value not in (None, "") else None

        def _opt_bool(key: str) -> bool | None:
            value = data.get(key)
            return value if isinstance(value, bool) else None

        return cls(
            reply=str(data.get("reply") or "").strip(),
            caller_name=_opt_str("caller_name"),
            caller_email=_opt_str("caller_email"),
            is_new_patient=_opt_bool("is_new_patient"),
            time_preference=_opt_str("time_preference"),
            request_slots=data.get("request_slots") is True,
            booking_confirmed=data.get("booking_confirmed") is True,
            selected_slot_index=index,
            is_group_booking=_opt_bool("is_group_booking"),
            group_participants=participants,
            intent=str(data.get("intent") or "other"),
            reschedule_confirmed=data.get("reschedule_confirmed") is True,
            cancel_confirmed=data.get("cancel_confirmed") is True,
            notes=_opt_str("notes"),
            end_call=data.get("end_call") is True,
        )


class TurnInterpreter(Protocol):
    async def interpret(self, ctx: CallContext, utterance: str) -> TurnProposal: ...


def build_messages(
    ctx: CallContext,
    clinic_name: str,
    knowledge: KnowledgeBase | None = None,
    utterance: str | None = None,
) -> list[dict]:
    system = get_system_prompt(ctx, clinic_name, knowledge, utterance)
    messages = [{"role": "system", "content": system}]
    for entry in ctx.history[-HISTORY_WINDOW:]:
        role = entry.get("role")
        if role == "user":
            messages.append({"role": "user", "content": entry["content"]})
        elif role == "agent":
            messages.append({"role": "assistant", "content": entry["content"]})
    return messages


class OpenAITurnInterpreter:
    """Turn interpreter backed by the OpenAI chat completions API (JSON mode).

    Any transport, HTTP or parse failure yields a proposal that only asks the
    caller to repeat themselves, so a model outage never changes state.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        clinic_name: str = "the clinic",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        knowledge: KnowledgeBase | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.clinic_name = clinic_name
        self.knowledge = knowledge
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def interpret(self, ctx: CallContext, utterance: str) -> TurnProposal:
        try:
            resp = await self._client.post(
                OPENAI_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "temperature": 0.2,
                    "response_format": {"type": "json_object"},
                    "messages": build_messages(ctx, self.clinic_name, self.knowledge, utterance),
                },
            )
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
            proposal = TurnProposal.from_dict(json.loads(content))
        except Exception as e:
            logger.error("turn interpretation failed: %s", e)
            return TurnProposal(reply=FALLBACK_REPLY)
        if not proposal.reply:
            proposal.reply = FALLBACK_REPLY
        return proposal
