"""
Self-critique pass over a produced answer.

Each evaluator attached to a chat is another chat configuration whose
system message instructs the model to audit an answer. The verdict is
requested as structured JSON; answers scoring under the evaluator's
threshold are regenerated with the auditor's notes appended, up to the
evaluator's iteration budget.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from agentgate.core.cancellation import CancellationToken
from agentgate.models.answer import AnswerResult
from agentgate.models.chat_config import ChatConfig, EvaluatorSpec
from agentgate.models.evaluation import EvaluationVerdict, verdict_response_format
from agentgate.models.thread import ConversationThread

if TYPE_CHECKING:
    from agentgate.core.engine import AgentEngine
    from agentgate.core.transport import MessagingTransport

logger = logging.getLogger(__name__)

DEFAULT_EVALUATOR_PROMPT = (
    "You review answers given by an assistant. Score how completely the answer "
    "resolves the request from 0 (useless) to 5 (fully complete) and explain "
    "what is missing or wrong. Respond with JSON only."
)


def evaluation_messages(system_message: str | None, request: str, answer: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_message or DEFAULT_EVALUATOR_PROMPT},
        {"role": "user", "content": f"Request:\n{request}\n\nAnswer:\n{answer}"},
    ]


def corrective_request(request: str, verdict: EvaluationVerdict) -> str:
    """The original request with the auditor's notes appended."""
    notes = verdict.justification or "The previous answer was judged incomplete."
    return f"{request}\n\nA reviewer found the previous answer incomplete (score {verdict.score}/5). Address this:\n{notes}"


class EvaluatorLoop:
    """Runs a chat's evaluators sequentially over the working answer."""

    def __init__(self, engine: "AgentEngine"):
        self.engine = engine

    async def run(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        request: str,
        result: AnswerResult,
        *,
        cancel_token: CancellationToken | None = None,
        transport: "MessagingTransport | None" = None,
        user_id: str | None = None,
    ) -> AnswerResult:
        """
        Score and, below threshold, regenerate the answer.

        Args:
            chat_config: Chat that produced ``result``
            thread: The chat's thread; its last answer is replaced on regeneration
            request: The user text the answer responds to
            result: Working answer

        Returns:
            The accepted (possibly regenerated) answer with all verdicts attached.
        """
        token = cancel_token or CancellationToken()
        current = result

        for spec in chat_config.evaluators:
            evaluator_config = self.engine.config.find_agent(spec.agent_name)
            if evaluator_config is None:
                logger.warning("[chat %s] evaluator agent not found: %s", thread.id, spec.agent_name)
                continue
            current = await self._run_one(spec, evaluator_config, chat_config, thread, request, current, token, transport, user_id)
            if current.aborted:
                return current

        return current

    async def _run_one(
        self,
        spec: EvaluatorSpec,
        evaluator_config: ChatConfig,
        chat_config: ChatConfig,
        thread: ConversationThread,
        request: str,
        current: AnswerResult,
        token: CancellationToken,
        transport: "MessagingTransport | None",
        user_id: str | None,
    ) -> AnswerResult:
        verdicts = list(current.verdicts)
        verdict = await self.score(evaluator_config, request, current.content, token)
        if verdict is None:
            return AnswerResult.aborted_result(current.rounds)
        verdicts.append(verdict)
        logger.info("[chat %s] evaluator %s: score %d", thread.id, spec.agent_name, verdict.score)

        iterations = 0
        while verdict.score < spec.threshold and iterations < spec.max_iterations:
            iterations += 1
            regenerated = await self.regenerate(chat_config, thread, corrective_request(request, verdict), token, transport, user_id)
            if regenerated.aborted:
                return regenerated
            if regenerated.cancelled:
                break
            current = regenerated
            replace_last_answer(thread, current.content, self.engine.threads, chat_config.chat_params.history_limit)

            verdict = await self.score(evaluator_config, request, current.content, token)
            if verdict is None:
                return AnswerResult.aborted_result(current.rounds)
            verdicts.append(verdict)
            logger.info(
                "[chat %s] evaluator %s: score %d after regeneration %d",
                thread.id,
                spec.agent_name,
                verdict.score,
                iterations,
            )

        return current.model_copy(update={"verdicts": verdicts})

    async def score(
        self,
        evaluator_config: ChatConfig,
        request: str,
        answer: str,
        cancel_token: CancellationToken,
    ) -> EvaluationVerdict | None:
        """One evaluator pass; None when the turn was aborted."""
        client = self.engine.client_for(evaluator_config)
        messages = evaluation_messages(evaluator_config.system_message, request, answer)
        response = await client.achat(messages, response_format=verdict_response_format(), cancel_token=cancel_token)
        if response is None:
            return None
        return EvaluationVerdict.parse(response.choices[0].message.content)

    async def regenerate(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        text: str,
        token: CancellationToken,
        transport: "MessagingTransport | None",
        user_id: str | None,
    ) -> AnswerResult:
        """Answer ``text`` on a fork of the history as it was before the last request."""
        fork = thread.fork()
        fork.messages = _history_before_last_request(fork.messages)
        self.engine.threads.add_user_message(fork, text, chat_config.chat_params.history_limit)
        return await self.engine.request_answer(chat_config, fork, cancel_token=token, transport=transport, user_id=user_id)


def _history_before_last_request(messages: list[dict]) -> list[dict]:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].get("role") == "user":
            return messages[:i]
    return list(messages)


def replace_last_answer(thread: ConversationThread, content: str, threads, limit: int) -> None:
    """Swap the final plain assistant entry for ``content``."""
    for entry in reversed(thread.messages):
        if entry.get("role") == "assistant" and not entry.get("tool_calls"):
            entry["content"] = content
            return
        if entry.get("role") == "user":
            break
    threads.add_answer(thread, content, limit)
