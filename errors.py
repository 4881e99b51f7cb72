# errors.py


class ProvisionerError(Exception):
    """Base class for all provisioning queue errors."""

    retryable = True


class PayloadError(ProvisionerError, ValueError):
    retryable = False


class JobNotFound(ProvisionerError, LookupError):
    retryable = False

    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class GatewayError(ProvisionerError):
    """A command run through the execution gateway failed or timed out."""

    def __init__(self, command, exit_code=None, stdout="", stderr=""):
        detail = (stderr or "").strip() or (stdout or "").strip() or "no output"
        super().__init__(f"Command failed with exit code {exit_code}: {detail}")
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class StepFailed(ProvisionerError):
    def __init__(self, step, cause):
        super().__init__(f"{step.label} failed: {cause}")
        self.step = step
        self.cause = cause


class RecordNotFound(ProvisionerError, LookupError):
    retryable = False

    def __init__(self, record_id):
        super().__init__(f"Provisioning record {record_id} not found")
        self.record_id = record_id


class InvalidStep(ProvisionerError, ValueError):
    retryable = False

    def __init__(self, name):
        super().__init__(f"Unknown provisioning step: {name!r}")
        self.name = name


class RollbackFailed(ProvisionerError):
    def __init__(self, cause):
        super().__init__(f"Rollback failed: {cause}")
        self.cause = cause
