# steps.py
"""Provisioning step executors.

Each executor builds the shell command(s) for one step, runs them through
the execution gateway and classifies the outcome as a StepResult. They
never raise for a failed command.
"""
import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from errors import GatewayError
from models import Step

logger = logging.getLogger(__name__)

GIT_SSH_COMMAND = "ssh -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"

# Per-step gateway timeouts, seconds
CLI_TIMEOUT = 60
CREDENTIALS_TIMEOUT = 30
CLONE_TIMEOUT = 120
ENV_TIMEOUT = 60
INSTALL_TIMEOUT = 180


@dataclass
class StepResult:
    success: bool
    output: str = ""
    error: Optional[str] = None


def build_args(**params):
    args = []
    for key, value in params.items():
        if value is not None:
            args.append(f"--{key}={shlex.quote(str(value))}")
    return args


def as_user(user, command, login=True):
    if login:
        return f"su - {user} -c {shlex.quote(command)}"
    return f"sudo -u {user} bash -c {shlex.quote(command)}"


class StepRunner:
    def __init__(self, gateway, clpctl_path="clpctl"):
        self.gateway = gateway
        self.clpctl_path = clpctl_path

    def _execute(self, command, timeout=None, secrets=()):
        try:
            result = self.gateway.run(command, timeout=timeout, secrets=secrets)
            result.raise_for_status()
        except GatewayError as e:
            return StepResult(success=False, output=e.stdout or "", error=str(e))
        except Exception as e:
            logger.exception("Execution gateway raised while running a step command")
            return StepResult(success=False, error=f"{e.__class__.__name__}: {e}")
        return StepResult(success=True, output=result.stdout)

    def _clpctl(self, action, *args, timeout=CLI_TIMEOUT, secrets=()):
        return self._execute(" ".join([self.clpctl_path, action, *args]), timeout=timeout, secrets=secrets)

    def run(self, step, params):
        executor = {
            Step.CREATE_SITE: self.create_site,
            Step.CREATE_DATABASE: self.create_database,
            Step.COPY_CREDENTIALS: self.copy_credentials,
            Step.CLONE_REPOSITORY: self.clone_repository,
            Step.CONFIGURE_ENVIRONMENT: self.configure_environment,
            Step.RUN_INSTALL_COMMANDS: self.run_install_commands,
        }[step]
        return executor(params)

    # ---------------- Steps ----------------
    def create_site(self, params):
        args = build_args(
            domainName=params.domain,
            phpVersion=params.php_version,
            vhostTemplate=params.vhost_template,
            siteUser=params.site_user,
            siteUserPassword=params.site_user_password,
        )
        return self._clpctl("site:add:php", *args, secrets=[params.site_user_password])

    def delete_site(self, domain):
        return self._clpctl("site:delete", *build_args(domainName=domain), "--force")

    def create_database(self, params):
        args = build_args(
            domainName=params.domain,
            databaseName=params.database_name,
            databaseUserName=params.database_user,
            databaseUserPassword=params.database_password,
        )
        return self._clpctl("db:add", *args, secrets=[params.database_password])

    def copy_credentials(self, params):
        user = params.site_user
        ssh_dir = f"/home/{user}/.ssh"
        commands = [
            f"sudo mkdir -p {ssh_dir}",
            f"sudo cp /root/.ssh/id_ed25519 {ssh_dir}/id_ed25519",
            f"sudo cp /root/.ssh/id_ed25519.pub {ssh_dir}/id_ed25519.pub",
            f"sudo chown -R {user}:{user} {ssh_dir}",
            f"sudo chmod 700 {ssh_dir}",
            f"sudo chmod 600 {ssh_dir}/id_ed25519",
            f"sudo chmod 644 {ssh_dir}/id_ed25519.pub",
        ]
        return self._execute(" && ".join(commands), timeout=CREDENTIALS_TIMEOUT)

    def clone_repository(self, params):
        if not params.repository_url:
            return StepResult(success=False, error="Repository URL is required for repository cloning")
        inner = (
            f"cd {shlex.quote(params.site_root)} && "
            f"GIT_SSH_COMMAND={shlex.quote(GIT_SSH_COMMAND)} git clone {shlex.quote(params.repository_url)} ."
        )
        return self._execute(as_user(params.site_user, inner), timeout=CLONE_TIMEOUT)

    def configure_environment(self, params):
        settings = {
            "APP_ENV": "production",
            "APP_DEBUG": "false",
            "APP_URL": f"https://{params.domain}",
            "DB_HOST": params.database_host,
            "DB_DATABASE": params.database_name,
            "DB_USERNAME": params.database_user,
            "DB_PASSWORD": params.database_password,
        }
        edits = " && ".join(
            f"sed -i {shlex.quote(f's|^{key}=.*|{key}={_sed_escape(value)}|')} .env" for key, value in settings.items()
        )
        inner = f"cd {shlex.quote(params.site_root)} && cp .env.example .env && {edits} && php artisan key:generate"
        command = as_user(params.site_user, inner, login=False)
        return self._execute(command, timeout=ENV_TIMEOUT, secrets=[params.database_password])

    def run_install_commands(self, params):
        options = params.install
        commands = []
        if options.install_dependencies:
            commands.append("composer install --optimize-autoloader --no-dev --no-interaction")
        if options.run_migrations:
            commands.append("php artisan migrate --force")
        if options.run_seeders:
            commands.append("php artisan db:seed --force")
        if options.optimize_cache:
            commands.append("php artisan config:cache && php artisan route:cache && php artisan view:cache")
        if not commands:
            return StepResult(success=True, output="No install commands selected")
        inner = f"cd {shlex.quote(params.site_root)} && " + " && ".join(commands)
        return self._execute(as_user(params.site_user, inner, login=False), timeout=INSTALL_TIMEOUT)

    # ---------------- Repository sync ----------------
    def git_info(self, payload):
        inner = (
            f"cd {shlex.quote(payload.path)} && echo '=== Current Branch ===' && git branch --show-current"
            " && echo '=== Remote Info ===' && git remote -v"
            " && echo '=== Status Before Pull ===' && git status --porcelain"
        )
        return self._execute(as_user(payload.site_user, inner), timeout=CLI_TIMEOUT)

    def git_pull(self, payload):
        inner = (
            f"cd {shlex.quote(payload.path)} && GIT_SSH_COMMAND={shlex.quote(GIT_SSH_COMMAND)}"
            " git pull origin $(git branch --show-current) 2>&1"
        )
        return self._execute(as_user(payload.site_user, inner), timeout=CLONE_TIMEOUT)

    def refresh_dependencies(self, payload):
        inner = (
            f"cd {shlex.quote(payload.path)} && if [ -f artisan ]; then"
            " composer install --no-dev --optimize-autoloader --quiet 2>&1 && php artisan optimize:clear 2>&1"
            " && echo 'Laravel optimizations completed'; else echo 'Not a Laravel project, skipping optimizations'; fi"
        )
        return self._execute(as_user(payload.site_user, inner), timeout=INSTALL_TIMEOUT)

    def git_status(self, payload):
        inner = (
            f"cd {shlex.quote(payload.path)} && echo '=== Status After Pull ===' && git status --porcelain"
            " && echo '=== Latest Commits ===' && git log --oneline -5"
        )
        return self._execute(as_user(payload.site_user, inner), timeout=CLI_TIMEOUT)


def _sed_escape(value):
    return str(value).replace("\\", "\\\\").replace("|", "\\|").replace("&", "\\&")
