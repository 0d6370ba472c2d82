import subprocess
from typing import NamedTuple, Optional


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


def run_command(command: str, timeout: Optional[float] = None) -> CommandResult:
    """
    Executes a shell command. Never raises: timeouts and launch errors come
    back as a non-zero CommandResult.
    """
    try:
        r = subprocess.run(command, shell=True, capture_output=True, text=True, timeout=timeout)
        return CommandResult(r.returncode, (r.stdout or "").strip(), (r.stderr or "").strip())
    except subprocess.TimeoutExpired:
        return CommandResult(-1, "", f"timed out after {timeout}s", timed_out=True)
    except Exception as e:
        return CommandResult(1, "", f"exception: {e}")
