import json
import logging

from colloquy.agent import Agent
from colloquy.context import ToolContext
from colloquy.gate import Resolution, ToolExecutionGate, ToolOutcome
from colloquy.instrumentation import record_error, tool_span
from colloquy.message import AssistantMessage, ToolCall
from colloquy.session import Session
from colloquy.tools import LLMRecoverableError, Tool

logger = logging.getLogger(__name__)


class ToolRunner:
    """Automated resolver for pending tool executions.

    Executes each pending call of an assistant message with the matching
    registered :class:`Tool` and reports the outcome to the gate, exactly
    as a human resolving calls by hand would.  Calls are run one at a
    time in tool-call order.

    Args:
        gate: The gate outcomes are reported to.
    """

    def __init__(self, gate: ToolExecutionGate):
        self.gate = gate

    async def run(
        self,
        session: Session,
        message: AssistantMessage,
        tool_registry: dict[str, Tool],
        agent: Agent | None = None,
    ) -> Resolution | None:
        """Resolve every pending execution of *message*.

        Returns the last resolution, which has ``released`` set when the
        gate appended the tool results.
        """
        last = None
        for tc in message.tool_calls:
            execution = message.execution_for(tc.id)
            if execution is None or execution.is_terminal:
                continue
            ctx = ToolContext(session=session, tool_call=tc, agent=agent)
            outcome = await self._execute_one(tc, tool_registry, ctx)
            last = await self.gate.resolve(session.session_id, tc.id, outcome)
            session = last.session
        return last

    async def _execute_one(
        self, tc: ToolCall, tool_registry: dict[str, Tool], ctx: ToolContext,
    ) -> ToolOutcome:
        tool_obj = tool_registry.get(tc.name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {tc.name}")
            return ToolOutcome.failed(f"tool '{tc.name}' not found")

        try:
            params = json.loads(tc.arguments)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in arguments for {tc.name}: {e}")
            return ToolOutcome.failed(f"invalid arguments: {e}")
        if not isinstance(params, dict):
            return ToolOutcome.failed("invalid arguments: expected a JSON object")

        logger.info(f"Calling {tc.name} with {params}")
        if tool_obj.wants_context:
            params["context"] = ctx

        async with tool_span(tc.name, tc.id) as span:
            try:
                result = await tool_obj(**params)
            except LLMRecoverableError as e:
                logger.info(f"Tool {tc.name} requested retry: {e}")
                return ToolOutcome.completed(str(e))
            except Exception as e:
                logger.error(f"Tool {tc.name} raised: {e}")
                record_error(span, e)
                return ToolOutcome.failed(str(e) or type(e).__name__)

        output = result.output
        output_str = output if isinstance(output, str) else json.dumps(output, default=str)
        return ToolOutcome.completed(output_str)
