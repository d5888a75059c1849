"""Remote-model provider that runs a bounded tool-calling loop.

Cancellation is cooperative: ``abort`` raises a per-job flag that is checked
between rounds and after every streamed chunk. An in-flight HTTP request is
never interrupted, and there is no wall-clock limit beyond the per-request
HTTP timeout; the loop is bounded by ``max_rounds`` only.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from contextlib import closing
from typing import Any

from codebot.config import ToolLoopSettings
from codebot.engine.models import ExecutionResult, ExitInfo, Job, utc_now_iso
from codebot.engine.providers.base import (
    OPERATING_CONSTRAINTS,
    ExecutionContext,
    ProviderError,
    RecentIds,
)
from codebot.engine.providers.gemini_client import (
    FunctionCall,
    GeminiClient,
    GenerativeClient,
    ModelTurn,
)
from codebot.engine.tools import ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)

ABORTED_EXIT = ExitInfo(code=130, signal="aborted")
SUCCESS_EXIT = ExitInfo(code=0, signal=None)

_SEARCH_HINT_RE = re.compile(
    r"\b(latest|current|today|yesterday|news|release|version|pricing|price|score|winner|"
    r"who won|documentation|docs|search|lookup|find)\b",
    re.IGNORECASE,
)


class ToolLoopProvider:
    """Drives the model through at most ``max_rounds`` request/tool rounds."""

    name = "gemini"

    def __init__(
        self,
        settings: ToolLoopSettings,
        tool_registry: ToolRegistry,
        *,
        client_factory: Callable[[], GenerativeClient] | None = None,
    ) -> None:
        self.settings = settings
        self.tool_registry = tool_registry
        self._client_factory = client_factory or self._default_client
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._aborted = RecentIds()
        self._completed = RecentIds()

    @property
    def model_label(self) -> str:
        return self.settings.model

    def describe(self) -> dict[str, object]:
        return {
            "gemini_model": self.settings.model,
            "max_rounds": self.settings.max_rounds,
            "stream": self.settings.stream,
        }

    def execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
        with self._lock:
            self._active.add(job.id)
        context.register_handle(f"session:{job.id}")
        try:
            return self._execute(job, context)
        finally:
            with self._lock:
                self._active.discard(job.id)
                self._aborted.discard(job.id)
                self._completed.add(job.id)

    def abort(self, job: Job) -> bool:
        with self._lock:
            if job.id in self._completed or job.id in self._aborted:
                return False
            self._aborted.add(job.id)
            return job.id in self._active

    def close(self) -> None:
        self.tool_registry.close()

    def _is_aborted(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._aborted

    def _execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
        log = context.log
        log.write_raw(
            f"== job {job.id} ==\nstarted: {utc_now_iso()}\nprovider: {self.name}\n"
            f"model: {self.settings.model}\nworkdir: {context.workdir}\n\n",
        )
        payload_base = {
            "systemInstruction": {"role": "system", "parts": [{"text": OPERATING_CONSTRAINTS}]},
        }
        tools = build_tool_declarations(
            self.tool_registry.list_tools(),
            web_search=wants_web_search(job.prompt),
        )
        if tools:
            payload_base["tools"] = tools

        contents: list[dict[str, Any]] = [{"role": "user", "parts": [{"text": job.prompt}]}]
        final = ModelTurn()
        sources: list[str] = []
        with closing(self._client_factory()) as client:
            for round_no in range(1, self.settings.max_rounds + 1):
                if self._is_aborted(job.id):
                    break
                payload = {**payload_base, "contents": contents}
                turn = self._run_round(client, payload, job, context)
                for uri in turn.sources:
                    if uri not in sources:
                        sources.append(uri)
                final = turn
                if self._is_aborted(job.id) or not turn.function_calls:
                    break
                if round_no == self.settings.max_rounds:
                    log.write_raw(
                        f"\n[codebot] tool round limit ({self.settings.max_rounds}) reached\n",
                    )
                    break

                contents.append(
                    {
                        "role": "model",
                        "parts": [
                            {"functionCall": {"name": call.name, "args": call.args}}
                            for call in turn.function_calls
                        ],
                    },
                )
                contents.append(
                    {
                        "role": "function",
                        "parts": [self._call_tool(call, context) for call in turn.function_calls],
                    },
                )

        if self._is_aborted(job.id):
            log.write_raw("\n\n[codebot] job aborted\n")
            return self._result(log.tail.text, ABORTED_EXIT)

        if not self.settings.stream:
            log.write(final.text)
        if sources:
            log.write("\n\nSources:\n" + "\n".join(f"- {uri}" for uri in sources) + "\n")
        log.write_raw(f"\n\nended: {utc_now_iso()}\nexit: code=0 signal=none\n")
        return self._result(log.tail.text, SUCCESS_EXIT)

    def _run_round(
        self,
        client: GenerativeClient,
        payload: dict[str, Any],
        job: Job,
        context: ExecutionContext,
    ) -> ModelTurn:
        if not self.settings.stream:
            return client.generate(payload)

        turn = ModelTurn()
        with closing(client.stream_generate(payload)) as chunks:
            for chunk in chunks:
                context.log.write(chunk.text)
                turn.merge(chunk)
                if self._is_aborted(job.id):
                    break
        return turn

    def _call_tool(self, call: FunctionCall, context: ExecutionContext) -> dict[str, Any]:
        logger.info("Model calling tool: %s", call.name)
        args_text = json.dumps(call.args, ensure_ascii=False)
        context.log.write_raw(f"\n[tool] {call.name} {args_text}\n")
        try:
            raw = self.tool_registry.call_tool(call.name, call.args)
        except Exception as error:  # noqa: BLE001
            logger.warning("Tool error (%s): %s", call.name, error)
            context.log.write_raw(f"[tool_error] {call.name}: {error}\n")
            response: dict[str, Any] = {"isError": True, "error": str(error)}
        else:
            response = format_tool_result(raw)
        return {"functionResponse": {"name": call.name, "response": response}}

    def _result(self, tail: str, exit_info: ExitInfo) -> ExecutionResult:
        return ExecutionResult(
            output_tail=tail,
            exit_info=exit_info,
            model_label=self.settings.model,
            provider_name=self.name,
        )

    def _default_client(self) -> GenerativeClient:
        if not self.settings.api_key:
            raise ProviderError("Missing Gemini API key (set CODEBOT_GEMINI_API_KEY).")
        return GeminiClient(
            api_key=self.settings.api_key,
            model=self.settings.model,
            base_url=self.settings.base_url,
            timeout_seconds=self.settings.request_timeout_seconds,
        )


def wants_web_search(prompt: str) -> bool:
    """Heuristic: does the task ask for fresh or external information?"""

    return bool(_SEARCH_HINT_RE.search(prompt or ""))


def build_tool_declarations(specs: list[ToolSpec], *, web_search: bool) -> list[dict[str, Any]]:
    tools: list[dict[str, Any]] = []
    if web_search:
        tools.append({"googleSearch": {}})
    if specs:
        tools.append(
            {
                "functionDeclarations": [
                    {
                        "name": spec.name,
                        "description": spec.description,
                        "parameters": _strip_schema_keys(spec.input_schema),
                    }
                    for spec in specs
                ],
            },
        )
    return tools


def format_tool_result(raw: object) -> dict[str, Any]:
    """Structure tool output as JSON when it parses, otherwise keep the raw text."""

    if not isinstance(raw, str):
        return {"result": raw}
    trimmed = raw.strip()
    if trimmed.startswith(("{", "[")):
        try:
            return {"result": json.loads(trimmed)}
        except json.JSONDecodeError:
            pass
    return {"result": raw}


def _strip_schema_keys(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            key: _strip_schema_keys(value) for key, value in schema.items() if key != "$schema"
        }
    if isinstance(schema, list):
        return [_strip_schema_keys(item) for item in schema]
    return schema
