"""Common utilities: command execution and the retry-with-timeout primitive."""

import logging
import shlex
import subprocess
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# op() -> (value, should_retry, error)
RetryOp = Callable[[], tuple[Any, bool, Optional[Exception]]]


class RetryTimeoutError(Exception):
    """Raised when a retried operation is still asking for a retry at its deadline."""

    def __init__(self, timeout: float, last_error: Optional[Exception] = None):
        self.timeout = timeout
        self.last_error = last_error
        msg = f"Timed out after {timeout}s"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)


def do_retry_with_timeout(op: RetryOp, timeout: float, interval: float) -> Any:
    """Poll op until it succeeds, fails terminally, or the deadline passes.

    Args:
        op: Callable returning (value, should_retry, error)
        timeout: Seconds before giving up
        interval: Seconds to sleep between attempts

    Returns:
        The value from the first attempt that did not ask for a retry.

    Raises:
        The error op returned with should_retry=False, or RetryTimeoutError
        carrying the last error seen when the deadline passed.
    """
    deadline = time.monotonic() + timeout
    last_error: Optional[Exception] = None
    while True:
        value, should_retry, err = op()
        if not should_retry:
            if err is not None:
                raise err
            return value
        if err is not None:
            last_error = err

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RetryTimeoutError(timeout, last_error)
        logger.debug(f"Retrying in {min(interval, remaining):.1f}s: {err or 'not ready'}")
        time.sleep(min(interval, remaining))


def run_command(cmd: list[str], timeout: float = 600) -> tuple[int, str, str]:
    """Run a local command to completion.

    Returns:
        (returncode, stdout, stderr); returncode is -1 when the command
        could not be started or exceeded timeout
    """
    logger.debug(f"exec: {shlex.join(cmd)}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        return -1, '', f"{cmd[0]}: no result within {timeout}s"
    except OSError as e:
        return -1, '', f"{cmd[0]}: {e}"
    return proc.returncode, proc.stdout, proc.stderr


# Host keys are not pinned
SSH_OPTIONS = (
    'BatchMode=yes',
    'StrictHostKeyChecking=no',
    'UserKnownHostsFile=/dev/null',
    'LogLevel=ERROR',
)


def ssh_command(host: str, command: str, user: str = 'root', port: int = 22,
                identity_file: Optional[str] = None, connect_timeout: int = 10) -> list[str]:
    """argv for running command on host over ssh."""
    argv = ['ssh', '-p', str(port)]
    for opt in SSH_OPTIONS + (f'ConnectTimeout={connect_timeout}',):
        argv += ['-o', opt]
    if identity_file:
        argv += ['-i', identity_file]
    return argv + [f'{user}@{host}', command]


def run_ssh(host: str, command: str, user: str = 'root', timeout: float = 60,
            port: int = 22, identity_file: Optional[str] = None) -> tuple[int, str, str]:
    """Run command on a cluster node; same result shape as run_command."""
    connect_timeout = max(1, min(10, int(timeout)))
    argv = ssh_command(host, command, user=user, port=port,
                       identity_file=identity_file, connect_timeout=connect_timeout)
    return run_command(argv, timeout=timeout)
