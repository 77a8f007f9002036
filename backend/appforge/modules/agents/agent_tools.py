"""
Code Agent Tools

Tool definitions exposed to the code agent and their execution against a
sandbox session. Tool failures are returned to the model as text so it can
react within its iteration budget; nothing here raises into the agent loop.
"""

import json
from typing import Any, Dict, List, Optional

from appforge.core.exceptions import SandboxCommandError
from appforge.core.logging_config import logger
from appforge.modules.agents.run_state import AgentRunState
from appforge.modules.sandbox.sandbox_session import SandboxSession


class AgentToolManager:
    """Tool schemas for the Anthropic tool_use API"""

    TERMINAL_TOOL = {
        "name": "terminal",
        "description": """Use this to run shell commands in the sandbox.
Use it for installing packages, running builds and inspecting the file system.
Returns stdout on success. On failure returns the error with stdout and stderr.""",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute"
                }
            },
            "required": ["command"]
        }
    }

    CREATE_OR_UPDATE_FILES_TOOL = {
        "name": "createOrUpdateFiles",
        "description": """Use this to create or update files in the sandbox.
Each file is written in order. Always send the complete file content;
a later write to the same path fully replaces the earlier one.""",
        "input_schema": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string", "description": "File path relative to the project root"},
                            "content": {"type": "string", "description": "Complete file content"}
                        },
                        "required": ["path", "content"]
                    }
                }
            },
            "required": ["files"]
        }
    }

    READ_FILES_TOOL = {
        "name": "readFiles",
        "description": """Read files from the sandbox.
Returns a JSON list of {path, content}. Files that cannot be read carry an
"error" field instead of content.""",
        "input_schema": {
            "type": "object",
            "properties": {
                "files": {
                    "type": "array",
                    "items": {"type": "string", "description": "File path relative to the project root"}
                }
            },
            "required": ["files"]
        }
    }

    @classmethod
    def get_tools(cls) -> List[Dict[str, Any]]:
        return [cls.TERMINAL_TOOL, cls.CREATE_OR_UPDATE_FILES_TOOL, cls.READ_FILES_TOOL]

    @classmethod
    def get_tool_by_name(cls, name: str) -> Optional[Dict[str, Any]]:
        for tool in cls.get_tools():
            if tool["name"] == name:
                return tool
        return None


class AgentToolbox:
    """
    Executes tool calls for one run.

    Bound to the run's own sandbox session and run state; a toolbox is never
    shared between runs.
    """

    def __init__(self, sandbox: SandboxSession, state: AgentRunState, log_prefix: str = "[CodeAgent]"):
        self.sandbox = sandbox
        self.state = state
        self.log_prefix = log_prefix

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return AgentToolManager.get_tools()

    async def execute(self, tool_name: str, tool_input: Dict[str, Any]) -> str:
        """Dispatch a tool call; the result is always a string for the model"""
        try:
            if tool_name == "terminal":
                return await self.terminal(tool_input.get("command", ""))
            if tool_name == "createOrUpdateFiles":
                return await self.create_or_update_files(tool_input.get("files") or [])
            if tool_name == "readFiles":
                return await self.read_files(tool_input.get("files") or [])
            return f"Unknown tool: {tool_name}"
        except Exception as e:
            logger.warning(f"{self.log_prefix} Tool {tool_name} failed: {e}")
            return f"Error executing {tool_name}: {str(e)}"

    async def terminal(self, command: str) -> str:
        buffers = {"stdout": "", "stderr": ""}

        def on_stdout(data: str):
            buffers["stdout"] += data

        def on_stderr(data: str):
            buffers["stderr"] += data

        try:
            result = await self.sandbox.run_command(command, on_stdout=on_stdout, on_stderr=on_stderr)
            return result.stdout
        except Exception as e:
            if isinstance(e, SandboxCommandError):
                buffers["stdout"] = buffers["stdout"] or e.stdout
                buffers["stderr"] = buffers["stderr"] or e.stderr
            message = f"Command failed: {e} \nstdout: {buffers['stdout']}\nstderr: {buffers['stderr']}"
            logger.warning(f"{self.log_prefix} {message}")
            return message

    async def create_or_update_files(self, files: List[Dict[str, Any]]) -> str:
        written: List[str] = []
        try:
            for file in files:
                path, content = file["path"], file["content"]
                await self.sandbox.write_file(path, content)
                self.state.record_file(path, content)
                written.append(path)
        except Exception as e:
            # Files written before the failure stay applied
            logger.warning(f"{self.log_prefix} File batch stopped after {len(written)} writes: {e}")
            return (
                f"Error creating or updating files: {e}. "
                f"Written before the error: {', '.join(written) or 'none'}"
            )

        logger.debug(f"{self.log_prefix} Wrote {len(written)} files")
        return f"Updated files: {', '.join(written)}"

    async def read_files(self, paths: List[Any]) -> str:
        contents: List[Dict[str, str]] = []
        for entry in paths:
            path = entry.get("path", "") if isinstance(entry, dict) else str(entry)
            try:
                contents.append({"path": path, "content": await self.sandbox.read_file(path)})
            except Exception as e:
                contents.append({"path": path, "error": f"Error reading file: {e}"})
        return json.dumps(contents)
