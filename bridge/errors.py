"""Exception taxonomy for the agent process driver and its callers."""


class BridgeError(RuntimeError):
    """Base class for every error raised by the bridge."""


class InterruptedRunError(BridgeError):
    """Raised when the user cancels an in-flight run.

    Callers suppress failure notifications for this error and keep whatever
    partial answer was already streamed.
    """

    code = "INTERRUPTED"

    def __init__(self, message: str = "已中断"):
        super().__init__(message)


class CodexAppServerError(BridgeError):
    """Raised when codex app-server request/response fails."""


class TurnError(CodexAppServerError):
    """A failure after ``turn/start`` was accepted; never triggers the batch fallback."""


class TurnFailedError(TurnError):
    """The agent reported an error for the active turn, or the stream closed mid-turn."""


class TurnTimeoutError(TurnError):
    """The turn did not complete within the configured bound."""


class CodexExecError(BridgeError):
    """Raised when the one-shot ``codex exec`` process fails."""

    def __init__(self, message: str, *, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ConfigError(BridgeError):
    """Raised when configuration files cannot be parsed."""


class SessionBusyError(BridgeError):
    """Raised when a turn is sent on a session that already has one in flight."""


def is_interrupted_error(error) -> bool:
    if error is None:
        return False
    if isinstance(error, InterruptedRunError) or getattr(error, "code", None) == "INTERRUPTED":
        return True
    return "已中断" in str(error)
