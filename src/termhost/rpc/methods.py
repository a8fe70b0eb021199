"""RPC method handlers with Pydantic parameter validation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from termhost import __version__
from termhost.config import TerminalConfig
from termhost.pty.errors import SessionError
from termhost.pty.manager import SessionRegistry
from termhost.pty.text import clean_output
from termhost.rpc.errors import INVALID_PARAMS, SERVER_ERROR, RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SERVER_NAME = "termhost"


@dataclass
class RpcContext:
    """State shared by every method handler of one dispatcher."""

    registry: SessionRegistry
    terminal: TerminalConfig
    # Session last created by terminal/execute; used when a request omits sessionId
    current_session_id: str | None = None

    def shape_output(self, result: dict[str, Any]) -> dict[str, Any]:
        output = result.get("output") or ""
        if self.terminal.strip_ansi:
            output = clean_output(output)
        return {
            "sessionId": result["sessionId"],
            "command": result["command"],
            "output": output,
            "status": result["status"],
            "exitCode": result["exitCode"],
        }

    def resolve_session_id(self, session_id: str | None) -> str:
        session_id = session_id or self.current_session_id
        if not session_id:
            raise RpcError(
                INVALID_PARAMS,
                "Invalid params: sessionId is required and no active session exists",
            )
        return session_id


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class _Params(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitializeParams(_Params):
    protocol_version: str | None = Field(default=None, alias="protocolVersion")
    client_info: dict[str, Any] | None = Field(default=None, alias="clientInfo")


class ExecuteParams(_Params):
    command: str = Field(min_length=1, description="Command line to run in the shell")
    session_id: str | None = Field(
        default=None,
        alias="sessionId",
        description="Session to run in; a new one is created if missing or not live",
    )


class SessionParams(_Params):
    session_id: str | None = Field(default=None, alias="sessionId")


class RequiredSessionParams(_Params):
    session_id: str = Field(min_length=1, alias="sessionId")


class InputParams(RequiredSessionParams):
    data: str


class ResizeParams(RequiredSessionParams):
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class UnblockParams(RequiredSessionParams):
    output: str = ""


class EmptyParams(_Params):
    pass


def describe_validation_error(error: ValidationError) -> str:
    """Turn a Pydantic error into a single -32602 message."""
    parts = []
    for err in error.errors():
        field_name = ".".join(str(p) for p in err["loc"]) or "params"
        if err["type"] == "missing":
            parts.append(f"{field_name} is required")
        else:
            parts.append(f"{field_name}: {err['msg']}")
    return "Invalid params: " + "; ".join(parts)


# ---------------------------------------------------------------------------
# Method base class
# ---------------------------------------------------------------------------


class RpcMethod(ABC, Generic[T]):
    """Base class for RPC methods.

    Each method declares its parameters as a Pydantic model. Session
    errors raised while executing are reported as -32000 with the
    method's ``failure_prefix``.
    """

    name: ClassVar[str]
    param_model: ClassVar[type[BaseModel]] = EmptyParams
    failure_prefix: ClassVar[str] = "Internal error"

    def __init__(self, context: RpcContext) -> None:
        self.context = context

    async def __call__(self, params: Any) -> Any:
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise RpcError(INVALID_PARAMS, "Invalid params: expected an object")
        try:
            parsed = self.param_model.model_validate(params)
        except ValidationError as e:
            raise RpcError(INVALID_PARAMS, describe_validation_error(e)) from e

        try:
            return await self.execute(parsed)  # type: ignore[arg-type]
        except RpcError:
            raise
        except SessionError as e:
            logger.warning("%s failed: %s", self.name, e)
            raise RpcError(SERVER_ERROR, f"{self.failure_prefix}: {e}") from e

    @property
    def registry(self) -> SessionRegistry:
        return self.context.registry

    @abstractmethod
    async def execute(self, params: T) -> Any:
        """Execute the method with validated parameters."""
        ...


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------


class InitializeMethod(RpcMethod[InitializeParams]):
    name: ClassVar[str] = "initialize"
    param_model: ClassVar[type[BaseModel]] = InitializeParams

    async def execute(self, params: InitializeParams) -> dict[str, Any]:
        logger.info(
            "Initializing RPC connection (client=%s)",
            (params.client_info or {}).get("name", "unknown"),
        )
        self.context.current_session_id = None
        return {
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "capabilities": {
                "terminal": {
                    "execute": True,
                    "output": True,
                    "stop": True,
                    "sessions": True,
                    "input": True,
                    "resize": True,
                    "unblock": True,
                }
            },
        }


class ExecuteMethod(RpcMethod[ExecuteParams]):
    """Run a command and wait for it to finish.

    Reuses ``sessionId`` when it names a live session; otherwise a fresh
    session (with a freshly generated ID) runs the command.
    """

    name: ClassVar[str] = "terminal/execute"
    param_model: ClassVar[type[BaseModel]] = ExecuteParams
    failure_prefix: ClassVar[str] = "Failed to execute command"

    async def execute(self, params: ExecuteParams) -> dict[str, Any]:
        session_id = params.session_id
        if session_id:
            try:
                self.registry.submit_command(session_id, params.command)
            except SessionError as e:
                logger.info("Session error: %s, creating new session", e)
            else:
                logger.info("Executing command in existing session %s", session_id)
                result = await self.registry.wait_for_completion(session_id)
                return self.context.shape_output(result)

        session = await self.registry.create(command=params.command)
        logger.info("Created session %s for command", session.session_id)
        self.context.current_session_id = session.session_id
        result = await self.registry.wait_for_completion(session.session_id)
        return self.context.shape_output(result)


class OutputMethod(RpcMethod[SessionParams]):
    name: ClassVar[str] = "terminal/output"
    param_model: ClassVar[type[BaseModel]] = SessionParams
    failure_prefix: ClassVar[str] = "Failed to get output"

    async def execute(self, params: SessionParams) -> dict[str, Any]:
        session_id = self.context.resolve_session_id(params.session_id)
        return self.context.shape_output(self.registry.get_output(session_id))


class StopMethod(RpcMethod[SessionParams]):
    name: ClassVar[str] = "terminal/stop"
    param_model: ClassVar[type[BaseModel]] = SessionParams
    failure_prefix: ClassVar[str] = "Failed to stop command"

    async def execute(self, params: SessionParams) -> dict[str, Any]:
        session_id = self.context.resolve_session_id(params.session_id)
        session = self.registry.stop(session_id)
        if self.context.current_session_id == session_id:
            self.context.current_session_id = None
        return {"success": True, "message": "Command terminated", "exitCode": session.exit_code}


class GetSessionsMethod(RpcMethod[EmptyParams]):
    name: ClassVar[str] = "terminal/get_sessions"

    async def execute(self, params: EmptyParams) -> dict[str, Any]:
        return {"sessions": self.registry.list_sessions()}


class InputMethod(RpcMethod[InputParams]):
    name: ClassVar[str] = "terminal/input"
    param_model: ClassVar[type[BaseModel]] = InputParams
    failure_prefix: ClassVar[str] = "Failed to send input"

    async def execute(self, params: InputParams) -> dict[str, Any]:
        self.registry.write_input(params.session_id, params.data)
        return {"success": True}


class ResizeMethod(RpcMethod[ResizeParams]):
    name: ClassVar[str] = "terminal/resize"
    param_model: ClassVar[type[BaseModel]] = ResizeParams
    failure_prefix: ClassVar[str] = "Failed to resize terminal"

    async def execute(self, params: ResizeParams) -> dict[str, Any]:
        self.registry.resize(params.session_id, params.cols, params.rows)
        return {"success": True}


class UnblockMethod(RpcMethod[UnblockParams]):
    name: ClassVar[str] = "terminal/unblock"
    param_model: ClassVar[type[BaseModel]] = UnblockParams
    failure_prefix: ClassVar[str] = "Failed to unblock session"

    async def execute(self, params: UnblockParams) -> dict[str, Any]:
        resolved = self.registry.unblock(params.session_id, params.output)
        return {"success": True, "resolved": resolved}


class CloseMethod(RpcMethod[RequiredSessionParams]):
    name: ClassVar[str] = "terminal/close"
    param_model: ClassVar[type[BaseModel]] = RequiredSessionParams
    failure_prefix: ClassVar[str] = "Failed to close session"

    async def execute(self, params: RequiredSessionParams) -> dict[str, Any]:
        closed = self.registry.close(params.session_id)
        if self.context.current_session_id == params.session_id:
            self.context.current_session_id = None
        return {"success": closed}


DEFAULT_METHODS: list[type[RpcMethod]] = [
    InitializeMethod,
    ExecuteMethod,
    OutputMethod,
    StopMethod,
    GetSessionsMethod,
    InputMethod,
    ResizeMethod,
    UnblockMethod,
    CloseMethod,
]
