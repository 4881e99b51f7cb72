# gateway.py
import logging
import re
import subprocess
from dataclasses import dataclass, field

from errors import GatewayError

logger = logging.getLogger(__name__)

_SECRET_ARG_RE = re.compile(r"(--\w*[Pp]assword=)((?:'[^']*'|\"[^\"]*\"|[^\s'\"])+)")
# Characters that shell quoting and sed escaping insert into a value
_QUOTING_RE = re.compile(r"[\\'\"|&]+")


def mask_secrets(text, secrets=()):
    """Mask `--*Password=` arguments and every known secret value in `text`."""
    masked = _SECRET_ARG_RE.sub(r"\1***", text)
    fragments = {f for secret in secrets if secret for f in _QUOTING_RE.split(secret) if f}
    for fragment in sorted(fragments, key=len, reverse=True):
        masked = masked.replace(fragment, "***")
    return masked


@dataclass
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    secrets: tuple = field(default=(), repr=False)

    @property
    def success(self):
        return self.exit_code == 0

    def raise_for_status(self):
        if not self.success:
            raise GatewayError(
                mask_secrets(self.command, self.secrets),
                self.exit_code,
                mask_secrets(self.stdout, self.secrets),
                mask_secrets(self.stderr, self.secrets),
            )
        return self


class LocalGateway:
    """Runs commands through the local shell.

    Failures never raise: a non-zero exit, a timeout or an OS error all come
    back as an unsuccessful CommandResult. Values passed as `secrets` never
    reach the log.
    """

    def __init__(self, default_timeout=600):
        self.default_timeout = default_timeout

    def run(self, command, timeout=None, secrets=()):
        timeout = timeout or self.default_timeout
        secrets = tuple(secrets)
        shown = mask_secrets(command, secrets)
        logger.info("Executing command: %s", shown)
        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout if timeout else None,
            )
        except subprocess.TimeoutExpired:
            logger.error("Command timed out after %ss: %s", timeout, shown)
            return CommandResult(command, -1, "", f"timeout after {timeout}s", secrets)
        except OSError as e:
            logger.error("Command could not be started: %s (%s)", shown, e)
            return CommandResult(command, -1, "", str(e), secrets)

        if result.returncode != 0:
            logger.warning("Command failed (exit_code=%s): %s", result.returncode, shown)
        return CommandResult(command, result.returncode, result.stdout or "", result.stderr or "", secrets)
