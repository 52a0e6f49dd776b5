from __future__ import annotations

import asyncio
import contextlib
import time
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

from .errors import BridgeConnectionError, StreamError
from .events import (
    EventSink,
    FunctionCallRequest,
    ResponseChunk,
    ResponseChunkReceived,
    ResponseComplete,
    ResponseFailed,
)
from .logging import RichLogger
from .sentences import SentenceBoundaryDetector, SentenceUnit
from .settings import settings

DISCLAIMER = (
    "I'm an automated pharmacy assistant and can't provide medical diagnoses. "
    "In emergencies call your local emergency number."
)


@dataclass
class ToolDef:
    name: str
    description: str
    parameters: Dict[str, Any]


TOOLS_SPEC: List[ToolDef] = [
    ToolDef(
        name="refill_service.placeRefill",
        description="Place a prescription refill order.",
        parameters={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Patient full name"},
                "dob": {"type": "string", "description": "Patient date of birth in MM/DD/YYYY format"},
                "med": {"type": "string", "description": "Medication name"},
                "dose": {"type": "string", "description": "Medication dosage"},
                "qty": {"type": "number", "description": "Quantity (optional)"},
                "pharmacy": {"type": "string", "description": "Pharmacy location"},
                "phone": {"type": "string", "description": "Phone number (optional)"},
            },
            "required": ["name", "dob", "med", "dose", "pharmacy"],
        },
    ),
    ToolDef(
        name="drug_info.checkInteractions",
        description="Check for drug interactions and contraindications.",
        parameters={
            "type": "object",
            "properties": {
                "meds": {"type": "array", "items": {"type": "string"}, "description": "Current medications"},
                "conditions": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Medical conditions (optional)",
                },
            },
            "required": ["meds"],
        },
    ),
    ToolDef(
        name="drug_info.getAdministrationGuide",
        description="Get administration guidance for a medication.",
        parameters={
            "type": "object",
            "properties": {"med": {"type": "string", "description": "Medication name"}},
            "required": ["med"],
        },
    ),
]

SYSTEM_PROMPT = (
    "You are an automated pharmacy voice assistant for refills, interaction checks, and administration "
    "guidance. You are not a doctor or pharmacist. Be concise, polite, and proactive about safety.\n"
    "- If the user asks for a diagnosis, new prescriptions, controlled substances, or anything beyond scope, "
    "decline and suggest speaking to a licensed professional.\n"
    "- Verify identity before discussing personal health information: ask for full name and date of birth.\n"
    "- For refills, gather medication name, dosage, quantity, pharmacy location and contact info, "
    "then call refill_service.placeRefill.\n"
    "- For interaction checks, ask for all current meds and significant conditions, call "
    "drug_info.checkInteractions, and surface only high-signal cautions.\n"
    "- For how-to-take questions call drug_info.getAdministrationGuide.\n"
    "- Encourage speaking to a pharmacist or prescriber for clinical decisions.\n"
    "- In an emergency, tell the user to call local emergency services immediately.\n"
    "- Replies are spoken aloud: keep them under 120 words, plain sentences, no lists or markdown.\n"
    "- Do NOT expose internal tools; just speak to the user.\n"
)


# OpenAI function names may not contain dots
def _wire_name(name: str) -> str:
    return name.replace(".", "__")


def _domain_name(name: str) -> str:
    return name.replace("__", ".")


def _openai_tools_payload() -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": _wire_name(t.name), "description": t.description, "parameters": t.parameters},
        }
        for t in TOOLS_SPEC
    ]


def load_system_prompt(path: str = "") -> str:
    if path:
        p = Path(path)
        if p.is_file():
            return p.read_text(encoding="utf-8")
        print(RichLogger.line(RichLogger.warning(f"system prompt {path!r} not found, using built-in prompt")))
    return SYSTEM_PROMPT


@dataclass
class LLMConfig:
    api_key: str = settings.openai_api_key
    model: str = settings.llm_model
    temperature: float = settings.llm_temperature
    max_tokens: int = settings.llm_max_tokens
    max_history: int = settings.llm_max_history      # messages kept, system prompt included
    min_sentence_chars: int = settings.min_sentence_chars
    system_prompt_path: str = settings.system_prompt_path
    disclaimer: str = DISCLAIMER                     # prefixed to the first spoken sentence; "" disables
    log: bool = settings.llm_log

    def __post_init__(self):
        if self.max_history < 2:
            raise ValueError(f"max_history must be >= 2, got {self.max_history}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be in [0, 2], got {self.temperature}")
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")


class ResponseStreamBridge:
    """
    Stateful per-session streaming LLM:
      - Keeps the conversation history (system prompt first, capped at max_history).
      - Streams each generation on its own task and posts ResponseChunk events;
        sentence-complete chunks are marked so the coordinator can speak them.
      - Tool calls are surfaced as chunks carrying `function_call`; generation resumes
        once every call of the turn has a result via handle_function_result().
      - Never executes tools itself.
    """

    def __init__(
        self,
        emit: EventSink,
        cfg: Optional[LLMConfig] = None,
        client: Any = None,
        session_id: str = "",
    ):
        self.cfg = cfg or LLMConfig()
        self._emit = emit
        self._client = client
        self._owns_client = client is None
        self._session_id = session_id or "--------"
        self._system_prompt = load_system_prompt(self.cfg.system_prompt_path)
        self._history: List[Dict[str, Any]] = []
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._pending_calls: Dict[str, FunctionCallRequest] = {}
        self._disclaimed = False

        if self.cfg.log:
            why = "" if (client is not None or self.cfg.api_key) else " (no OPENAI_API_KEY)"
            self._log(f"🤖 LLM: enabled={not why} model={self.cfg.model}{why}")

    def _log(self, msg: str):
        print(RichLogger.line(f"[LLM {self._session_id[:8]}]", msg))

    @property
    def history(self) -> List[Dict[str, Any]]:
        return [dict(m) for m in self._history]

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def in_flight(self) -> bool:
        return bool(self._pending_calls) or (self._task is not None and not self._task.done())

    @property
    def pending_calls(self) -> List[FunctionCallRequest]:
        return list(self._pending_calls.values())

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.cfg.api_key:
                raise BridgeConnectionError("OpenAI API key is required", code="LLM_ERROR")
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.cfg.api_key)
        return self._client

    # ------------------ conversation ------------------
    def start_conversation(self):
        self._history = [{"role": "system", "content": self._system_prompt}]
        self._pending_calls.clear()
        self._disclaimed = False

    def clear_history(self):
        self._cancel_task()
        self._history = []
        self._pending_calls.clear()
        self._disclaimed = False

    def _trim(self):
        h = self._history
        if len(h) <= self.cfg.max_history:
            return
        rest = h[-(self.cfg.max_history - 1):]
        # never start the window on an orphaned assistant/tool message
        while rest and rest[0].get("role") != "user":
            rest.pop(0)
        self._history = [h[0]] + rest

    def send_message(self, text: str) -> int:
        """Append a user turn and start streaming the reply. Returns the generation id."""
        if not self._history:
            self.start_conversation()
        self._history.append({"role": "user", "content": text})
        self._trim()
        if self.cfg.log:
            self._log(RichLogger.llm_request(text))
        return self._start_generation()

    def handle_function_result(
        self, name: str, result: Dict[str, Any], call_id: Optional[str] = None
    ) -> Optional[int]:
        """
        Append a tool result. Returns the new generation id once every outstanding
        call of the turn is answered, otherwise None.
        """
        req = self._pending_calls.get(call_id) if call_id else None
        if req is None:
            req = next((r for r in self._pending_calls.values() if r.name == name), None)
        if req is None:
            raise StreamError(f"no pending function call named {name!r}", code="LLM_ERROR")

        del self._pending_calls[req.call_id]
        self._history.append(
            {
                "role": "tool",
                "tool_call_id": req.call_id,
                "content": orjson.dumps(result, default=str).decode("utf-8"),
            }
        )
        if self.cfg.log:
            preview = orjson.dumps(result, default=str).decode("utf-8")[:200]
            self._log(f"🔧 tool_result({req.name}) {preview}")
        if self._pending_calls:
            return None
        return self._start_generation()

    def _start_generation(self) -> int:
        self._generation += 1
        self._task = asyncio.create_task(self._stream(self._generation))
        return self._generation

    # ------------------ streaming ------------------
    def _emit_unit(self, unit: SentenceUnit, generation: int):
        text = unit.text
        if self.cfg.disclaimer and not self._disclaimed:
            text = f"{self.cfg.disclaimer} {text}"
            self._disclaimed = True
        if self.cfg.log:
            self._log(RichLogger.llm_sentence(text, unit.confidence))
        self._emit(
            ResponseChunkReceived(
                chunk=ResponseChunk(
                    text=text, is_sentence_complete=True, generation=generation, confidence=unit.confidence
                )
            )
        )

    async def _stream(self, generation: int):
        detector = SentenceBoundaryDetector(self.cfg.min_sentence_chars)
        parts: List[str] = []
        tool_acc: Dict[int, Dict[str, str]] = {}
        t0 = time.time()
        try:
            client = self._get_client()
            stream = await client.chat.completions.create(
                model=self.cfg.model,
                messages=list(self._history),
                tools=_openai_tools_payload(),
                tool_choice="auto",
                temperature=self.cfg.temperature,
                max_tokens=self.cfg.max_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                content = getattr(delta, "content", None)
                if content:
                    parts.append(content)
                    self._emit(
                        ResponseChunkReceived(
                            chunk=ResponseChunk(text=content, is_sentence_complete=False, generation=generation)
                        )
                    )
                    for unit in detector.add_text(content):
                        self._emit_unit(unit, generation)

                for tc in getattr(delta, "tool_calls", None) or []:
                    acc = tool_acc.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        acc["id"] = tc.id
                    fn = tc.function
                    if fn is not None:
                        if fn.name:
                            acc["name"] += fn.name
                        if fn.arguments:
                            acc["arguments"] += fn.arguments

            tail = detector.flush()
            if tail:
                self._emit_unit(tail, generation)

            text = "".join(parts)
            dt = (time.time() - t0) * 1000
            if self.cfg.log:
                self._log(RichLogger.timing(f"LLM gen {generation}", dt))

            if tool_acc:
                self._finish_with_tools(generation, text, [tool_acc[i] for i in sorted(tool_acc)])
                return

            if text:
                self._history.append({"role": "assistant", "content": text})
                self._trim()
            self._emit(ResponseComplete(generation=generation, text=text, awaiting_function=False))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(RichLogger.error(f"LLM stream failed: {e!r}"))
            if self.cfg.log:
                traceback.print_exc()
            err = e if isinstance(e, StreamError) else StreamError(f"LLM stream failed: {e}", code="LLM_ERROR")
            self._emit(ResponseFailed(generation=generation, error=err))

    def _finish_with_tools(self, generation: int, text: str, calls: List[Dict[str, str]]):
        tool_calls_payload = []
        requests: List[FunctionCallRequest] = []
        for i, c in enumerate(calls):
            call_id = c["id"] or f"call_{generation}_{i}"
            try:
                args = orjson.loads(c["arguments"] or "{}")
            except orjson.JSONDecodeError:
                args = {}
            if not isinstance(args, dict):
                args = {}
            tool_calls_payload.append(
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": c["name"], "arguments": c["arguments"] or "{}"},
                }
            )
            requests.append(FunctionCallRequest(name=_domain_name(c["name"]), args=args, call_id=call_id))

        self._history.append({"role": "assistant", "content": text or None, "tool_calls": tool_calls_payload})
        for req in requests:
            self._pending_calls[req.call_id] = req
            if self.cfg.log:
                self._log(RichLogger.tool_call(req.name, req.args))
            self._emit(ResponseChunkReceived(chunk=ResponseChunk(function_call=req, generation=generation)))
        self._emit(ResponseComplete(generation=generation, text=text, awaiting_function=True))

    # ------------------ lifecycle ------------------
    def _cancel_task(self):
        if self._task and not self._task.done():
            self._task.cancel()

    async def close(self):
        task = self._task
        self._cancel_task()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._task = None
        self._pending_calls.clear()
        if self._owns_client and self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.close()
            self._client = None
