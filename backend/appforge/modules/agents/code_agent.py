"""
Code Agent - bounded tool-use loop against one sandbox

Each iteration is one model turn followed by the tool calls it requested.
The run ends when the model's text contains the completion marker, or when
the iteration budget is spent (an incomplete run, which the orchestrator
classifies as an error). Tool calls of the completing turn are still executed
so its final file writes are kept.
"""

from typing import Any, Dict, List, Optional

from appforge.core.config import settings
from appforge.core.exceptions import AIServiceError
from appforge.core.logging_config import logger
from appforge.modules.agents.agent_tools import AgentToolbox
from appforge.modules.agents.run_state import AgentRunState
from appforge.utils.llm_client import LLMClient, LLMResponse


CONTINUE_MESSAGE = (
    "Continue working on the task. When everything is done, reply with the "
    "<task_summary> block."
)


class CodeAgent:
    """
    One agent invocation: created fresh per run together with its toolbox and state.

    Usage:
        state = AgentRunState()
        agent = CodeAgent(llm, AgentToolbox(sandbox, state), system_prompt)
        await agent.run(user_request)
    """

    def __init__(
        self,
        llm: LLMClient,
        toolbox: AgentToolbox,
        system_prompt: str,
        max_iterations: Optional[int] = None,
        completion_marker: Optional[str] = None,
        temperature: Optional[float] = None,
        name: str = "code-agent",
    ):
        self.llm = llm
        self.toolbox = toolbox
        self.state = toolbox.state
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations or settings.AGENT_MAX_ITERATIONS
        self.completion_marker = completion_marker or settings.AGENT_COMPLETION_MARKER
        self.temperature = settings.AGENT_TEMPERATURE if temperature is None else temperature
        self.name = name
        self.log_prefix = toolbox.log_prefix

    def _detect_completion(self, text: str) -> bool:
        """Latch the summary on the first turn whose text carries the marker"""
        if text and self.completion_marker in text:
            if self.state.complete(text):
                logger.log_agent_event(self.name, "completion marker received",
                                       iteration=self.state.iterations)
            return True
        return False

    async def _run_tools(self, response: LLMResponse) -> List[Dict[str, Any]]:
        results = []
        for call in response.tool_calls:
            output = await self.toolbox.execute(call.name, call.input)
            results.append({
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": output,
            })
        return results

    async def run(self, user_request: str) -> AgentRunState:
        """Drive the loop until completion or the iteration ceiling"""
        messages: List[Dict[str, Any]] = [{"role": "user", "content": user_request}]
        tools = self.toolbox.definitions

        logger.info(f"{self.log_prefix} Starting run (max {self.max_iterations} iterations)")

        while not self.state.is_terminated and self.state.iterations < self.max_iterations:
            self.state.iterations += 1

            try:
                response = await self.llm.create_message(
                    system=self.system_prompt,
                    messages=messages,
                    tools=tools,
                    temperature=self.temperature,
                )
            except AIServiceError as e:
                logger.error(f"{self.log_prefix} Model call failed on iteration {self.state.iterations}: {e}")
                self.state.terminate()
                break

            logger.info(
                f"{self.log_prefix} Iteration {self.state.iterations}, "
                f"stop_reason: {response.stop_reason}, tool_calls: {len(response.tool_calls)}"
            )

            completed = self._detect_completion(response.text)
            messages.append({"role": "assistant", "content": response.content or response.text or "(no output)"})

            if response.tool_calls:
                messages.append({"role": "user", "content": await self._run_tools(response)})
            elif not completed:
                messages.append({"role": "user", "content": CONTINUE_MESSAGE})

            if completed:
                break

        if not self.state.is_terminated:
            logger.warning(
                f"{self.log_prefix} Iteration budget of {self.max_iterations} spent without completion"
            )
            self.state.terminate()

        return self.state
