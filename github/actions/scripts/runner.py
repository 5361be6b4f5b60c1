#!/usr/bin/env python3
"""
Heroku-hosted GitHub Actions Runner Entrypoint

Registers an ephemeral self-hosted runner with a GitHub organization, runs it
until it has processed one job, and unregisters it when the dyno is shut down.
The runner itself is installed beforehand by install_runner.py.

ALGORITHM:
==========

1. VALIDATION (all modes):
   - GITHUB_ORGANIZATION, credentials, HIDDEN_ENV_VARS, labels and group are
     checked against strict patterns to avoid code injection
   - Runner directory is selected: RUNNER_DIR, $HOME/actions-runner (Dockerfile
     install) or $PWD/actions-runner (CNB buildpack install)

2. START MODE (./runner.py start or ./runner.py) [DEFAULT]:
   - Attach: fetch a registration token and execute
       ./config.sh --unattended --token <token> --url https://github.com/<org>
                   --replace --disableupdate --ephemeral [--labels L] [--runnergroup G]
   - Launch ./bin/runsvc.sh with an environment that excludes HIDDEN_ENV_VARS
     and the entrypoint's own credentials
   - On SIGINT/SIGTERM: detach (bounded by RUNNER_DEREGISTER_TIMEOUT), then forward
     the signal to the runner process (SIGKILL if it does not exit)
   - Exit with the runner's exit status (128 + N if it was killed by signal N)

3. ATTACH MODE (./runner.py attach):
   - Only the registration step of START

4. DETACH MODE (./runner.py detach):
   - Fetch a removal token and execute ./config.sh remove --token <token>

AUTHENTICATION CHAIN:
=====================
  1. GITHUB_ACCESS_TOKEN  - Personal access token with admin:org scope
  2. GitHub App           - GITHUB_CLIENT_ID + GITHUB_APP_KEY_PATH (JWT -> Installation Token)

ENVIRONMENT VARIABLES:
======================
  GITHUB_ORGANIZATION        - Organization the runner is attached to (required)
  GITHUB_ACCESS_TOKEN        - Personal access token (priority 1)
  GITHUB_CLIENT_ID           - GitHub App Client ID (priority 2, requires APP_KEY_PATH)
  GITHUB_APP_KEY_PATH        - Path to GitHub App private key PEM file (priority 2)
  HIDDEN_ENV_VARS            - Space separated env vars hidden from the runner and workflows
  GITHUB_RUNNER_LABELS       - Comma-separated runner labels
  GITHUB_RUNNER_GROUP        - Runner group
  RUNNER_DIR                 - Runner installation directory override
  GITHUB_API_URL             - GitHub API base URL (default: https://api.github.com)
  GITHUB_SERVER_URL          - GitHub web URL (default: https://github.com)
  RUNNER_SETUP_TIMEOUT       - Timeout for config.sh registration in seconds (default: 60)
  RUNNER_DEREGISTER_TIMEOUT  - Timeout for config.sh remove on shutdown (default: 30)
  GITHUB_API_RETRIES         - Number of API retry attempts (default: 3)
  GITHUB_API_BACKOFF         - Exponential backoff multiplier for retries (default: 1.5)
"""

import argparse
from collections import deque
import functools
import json
import logging
import os
import platform
import random
import re
import select
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import jwt

__version__ = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("runner-ctl")

class SignalHandler:
    """
    Context manager for handling system signals (SIGINT, SIGTERM).
    Remembers the first signal received and restores original handlers upon exit.
    """
    def __init__(self):
        self.shutdown_requested = False
        self.received_signal: Optional[int] = None
        self._original_sigint = None
        self._original_sigterm = None

    def __enter__(self):
        self._original_sigint = signal.getsignal(signal.SIGINT)
        self._original_sigterm = signal.getsignal(signal.SIGTERM)

        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        signal.signal(signal.SIGINT, self._original_sigint)
        signal.signal(signal.SIGTERM, self._original_sigterm)

    def _handler(self, signum: int, frame: Any):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info(f"[self-hosted runner] received {name}")

        if self.received_signal is None:
            self.received_signal = signum
        self.shutdown_requested = True

class RunnerError(Exception):
    """Base exception for runner entrypoint errors."""
    pass

def exit_status(returncode: int) -> int:
    """Maps a Popen return code to a shell-style exit status (128 + N for signal N)."""
    if returncode < 0:
        return 128 + abs(returncode)
    return returncode

# --- Configuration ---
@dataclass
class Config:
    """
    Holds configuration derived from environment variables.
    Responsible for validating inputs and locating the runner installation.
    """
    organization: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_ORGANIZATION"))

    # 1. Personal access token
    access_token: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_ACCESS_TOKEN"))

    # 2. GitHub App (Client ID + Private Key)
    client_id: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_CLIENT_ID"))
    app_key_path: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_APP_KEY_PATH"))

    hidden_env_vars: str = field(default_factory=lambda: os.getenv("HIDDEN_ENV_VARS", ""))
    runner_labels: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_RUNNER_LABELS"))
    runner_group: Optional[str] = field(default_factory=lambda: os.getenv("GITHUB_RUNNER_GROUP"))

    runner_dir: Optional[str] = field(default_factory=lambda: os.getenv("RUNNER_DIR"))
    home_dir: Path = field(default_factory=lambda: Path(os.getenv("HOME", "/app")))
    work_dir: Path = field(default_factory=Path.cwd)

    api_url: str = field(default_factory=lambda: os.getenv("GITHUB_API_URL", "https://api.github.com"))
    server_url: str = field(default_factory=lambda: os.getenv("GITHUB_SERVER_URL", "https://github.com"))

    api_retries: int = field(default_factory=lambda: int(os.getenv("GITHUB_API_RETRIES", "3")))
    api_backoff: float = field(default_factory=lambda: float(os.getenv("GITHUB_API_BACKOFF", "1.5")))

    setup_timeout: int = field(default_factory=lambda: int(os.getenv("RUNNER_SETUP_TIMEOUT", "60")))
    deregister_timeout: int = field(default_factory=lambda: int(os.getenv("RUNNER_DEREGISTER_TIMEOUT", "30")))

    # GitHub organization names: alphanumerics, '-', '_', '.', 1 to 60 characters
    ORG_PATTERN = re.compile(r'[A-Za-z0-9_.-]{1,60}')
    TOKEN_PATTERN = re.compile(r'[a-zA-Z0-9_]+')
    # Space separated Heroku config var names
    HIDDEN_VARS_PATTERN = re.compile(r'[A-Z][A-Z0-9_ ]*')
    NAME_PATTERN = re.compile(r'[a-zA-Z0-9._-]+')

    # Never handed down to the runner process
    CREDENTIAL_VARS = ('GITHUB_ACCESS_TOKEN', 'GITHUB_APP_KEY_PATH')

    @property
    def registration_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/{self.organization}"

    @property
    def hidden_vars(self) -> List[str]:
        return self.hidden_env_vars.split()

    def validate(self):
        """Validates critical configuration presence and format."""
        if not self.organization:
            raise RunnerError("GITHUB_ORGANIZATION is required")
        if not self.ORG_PATTERN.fullmatch(self.organization):
            raise RunnerError("GITHUB_ORGANIZATION contains invalid characters or is longer than 60 characters")

        has_app = bool(self.client_id and self.app_key_path)
        if not (self.access_token or has_app):
            raise RunnerError("Auth required: Provide GITHUB_ACCESS_TOKEN or (GITHUB_CLIENT_ID + GITHUB_APP_KEY_PATH).")

        if self.access_token and not self.TOKEN_PATTERN.fullmatch(self.access_token):
            raise RunnerError("GITHUB_ACCESS_TOKEN contains invalid characters")

        if has_app and not Path(self.app_key_path).exists():
            raise RunnerError(f"Private Key not found at: {self.app_key_path}")

        if self.hidden_env_vars and not self.HIDDEN_VARS_PATTERN.fullmatch(self.hidden_env_vars):
            raise RunnerError("HIDDEN_ENV_VARS contains invalid characters")

        if self.runner_group and not self.NAME_PATTERN.fullmatch(self.runner_group):
            raise RunnerError(
                f"Invalid GITHUB_RUNNER_GROUP '{self.runner_group}'. "
                "Allowed characters: a-z, A-Z, 0-9, '-', '_', '.'"
            )

        if self.runner_labels:
            for label in (l.strip() for l in self.runner_labels.split(',')):
                if label and not self.NAME_PATTERN.fullmatch(label):
                    raise RunnerError(
                        f"Invalid label '{label}' in GITHUB_RUNNER_LABELS. "
                        "Allowed characters: a-z, A-Z, 0-9, '-', '_', '.'"
                    )

    def resolve_runner_dir(self) -> Path:
        """
        Dockerfile installs go to $HOME/actions-runner, buildpack installs
        to ./actions-runner. RUNNER_DIR wins over both.
        """
        if self.runner_dir:
            candidates = [Path(self.runner_dir)]
        else:
            candidates = [self.home_dir / "actions-runner", self.work_dir / "actions-runner"]

        for path in candidates:
            if path.is_dir():
                return path

        raise RunnerError("Could not determine runner directory. Neither CNB nor Dockerfile path exists.")

    def child_env(self, base: Mapping[str, str]) -> Dict[str, str]:
        """Environment for the runner process: base minus hidden and credential variables."""
        denied = set(self.hidden_vars) | set(self.CREDENTIAL_VARS)
        for name in sorted(denied & set(base)):
            logger.info(f"Hiding {name} from the runner")
        return {k: v for k, v in base.items() if k not in denied}

class GitHubAppAuthenticator:
    """
    Handles RSA signing for GitHub App Authentication.
    """
    def __init__(self, config: Config):
        self.client_id = config.client_id
        self.key_path = config.app_key_path
        self._key_cache: Optional[bytes] = None

        if self.client_id and self.key_path:
            try:
                self._key_cache = Path(self.key_path).read_bytes()
            except OSError as e:
                logger.error(f"GitHub App Auth initialization failed: {e}")

    @property
    def is_available(self) -> bool:
        return bool(self.client_id) and self._key_cache is not None

    def generate_jwt(self) -> str:
        """Sign a JWT using Client ID as Issuer (valid 10 minutes)."""
        if not self.is_available:
            raise RunnerError("Cannot generate JWT: App Auth is not ready (check logs for init errors).")

        now = int(time.time())
        payload = {
            # Backdated to tolerate clock drift
            'iat': now - 60,
            'exp': now + 600,
            'iss': self.client_id
        }

        try:
            return jwt.encode(payload, self._key_cache, algorithm='RS256')
        except (jwt.PyJWTError, ValueError) as e:
            raise RunnerError(f"JWT Signing failed: {e}")

class RetryPolicy:
    """
    Decorator retrying transient network failures with exponential backoff.
    Reads api_retries/api_backoff from the decorated method's instance config.
    """

    def __init__(self, exceptions=(URLError, HTTPError)):
        self.exceptions = exceptions

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(obj, *args, **kwargs):
            config = getattr(obj, 'config', None)
            max_retries = getattr(config, 'api_retries', 3)
            backoff_factor = getattr(config, 'api_backoff', 1.5)

            delay = 1.0
            for attempt in range(max_retries + 1):
                try:
                    return func(obj, *args, **kwargs)
                except self.exceptions as e:
                    # Client errors are final
                    if isinstance(e, HTTPError) and 400 <= e.code < 500:
                        raise

                    if attempt == max_retries:
                        logger.error(f"Operation failed after {max_retries} retries: {e}")
                        raise

                    sleep_time = delay * (1 + random.random() * 0.1)
                    logger.warning(f"Network error: {e}. Retrying in {sleep_time:.2f}s (Attempt {attempt + 1}/{max_retries})...")
                    time.sleep(sleep_time)
                    delay *= backoff_factor

        return wrapper

class GitHubClient:
    """
    Requests short-lived registration and removal tokens for the organization.
    """

    def __init__(self, config: Config):
        self.config = config
        self.app_auth = GitHubAppAuthenticator(config)

    def _endpoint(self, path_suffix: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/{path_suffix}"

    @RetryPolicy()
    def _send_request(self, req: Request) -> bytes:
        with urlopen(req, timeout=30) as resp:
            return resp.read()

    def _execute_api_call(self, url: str, auth_token: str, method: str = "GET") -> Any:
        req = Request(url, method=method)
        req.add_header("Authorization", f"Bearer {auth_token}")
        req.add_header("Accept", "application/vnd.github+json")
        req.add_header("X-GitHub-Api-Version", "2022-11-28")

        user_agent = f"RunnerEntrypoint/{__version__} (Python {platform.python_version()}; {platform.system()})"
        req.add_header("User-Agent", user_agent)

        try:
            return json.loads(self._send_request(req))
        except HTTPError as e:
            if e.code == 401:
                raise RunnerError("Invalid or expired credentials (401 Unauthorized).")
            elif e.code == 404:
                raise RunnerError(f"Resource not found at {url} (404). Check GITHUB_ORGANIZATION and token scopes.")
            raise RunnerError(f"GitHub API Error: {e.code} {e.reason}")
        except URLError as e:
            raise RunnerError(f"Network error connecting to GitHub: {str(e)}")
        except json.JSONDecodeError as e:
            raise RunnerError(f"Invalid API response: {str(e)}")

    def _get_app_installation_token(self) -> str:
        logger.info("Authenticating via GitHub App (Client ID)...")
        jwt_token = self.app_auth.generate_jwt()

        url = self._endpoint(f"orgs/{self.config.organization}/installation")
        installation = self._execute_api_call(url, auth_token=jwt_token)
        try:
            installation_id = installation['id']
        except (KeyError, TypeError):
            raise RunnerError("Invalid API response: installation id missing")
        logger.info(f"Installation ID found: {installation_id}")

        url = self._endpoint(f"app/installations/{installation_id}/access_tokens")
        data = self._execute_api_call(url, auth_token=jwt_token, method="POST")
        try:
            return data['token']
        except (KeyError, TypeError):
            raise RunnerError("Invalid API response: access token missing")

    def get_token(self, action: str) -> str:
        """
        Retrieves a short-lived token for 'registration' or 'remove'.
        """
        if self.config.access_token:
            auth_token = self.config.access_token
        elif self.app_auth.is_available:
            auth_token = self._get_app_installation_token()
        else:
            raise RunnerError("Authentication not configured.")

        logger.info(f"Requesting {action} token via API...")

        url = self._endpoint(f"orgs/{self.config.organization}/actions/runners/{action}-token")
        data = self._execute_api_call(url, auth_token=auth_token, method="POST")
        try:
            return data["token"]
        except (KeyError, TypeError):
            raise RunnerError(f"Invalid API response: {action} token missing")

class RunnerService:
    """
    Attaches the ephemeral runner, runs it and detaches it on shutdown.
    """
    IO_POLL_INTERVAL = 1.0
    ERROR_LOG_SIZE = 50
    TERMINATION_TIMEOUT = 5.0
    SENSITIVE_FLAGS = {'--token'}

    def __init__(self, config: Config, gh_client: GitHubClient):
        self.config = config
        self.github = gh_client

    def _sanitize_args(self, args: List[str]) -> str:
        """
        Masks values of sensitive arguments for logging purposes.
        Example: ['--token', 'SECRET'] -> '--token ***'
        """
        sanitized = []
        mask_next = False
        for arg in args:
            sanitized.append("***" if mask_next else arg)
            mask_next = not mask_next and arg in self.SENSITIVE_FLAGS
        return " ".join(sanitized)

    def _terminate_process(self, process: Optional[subprocess.Popen], signum: Optional[int] = None) -> None:
        """Sends signum (SIGTERM by default), SIGKILL if the process does not exit in time."""
        if process is None or process.poll() is not None:
            return

        try:
            if signum is None:
                process.terminate()
            else:
                process.send_signal(signum)
            process.wait(timeout=self.TERMINATION_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=self.TERMINATION_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning(f"Process {process.pid} did not exit after SIGKILL")

    def _exec(self, args: List[str], cwd: Path, timeout: Optional[int] = None, check: bool = True) -> int:
        """
        Runs a command, streaming its merged output to stdout.

        Args:
            args: Command arguments as list.
            cwd: Working directory.
            timeout: Max execution time in seconds (None for infinite).
            check: raise RunnerError when the command exits non-zero
        """
        start_time = time.time()
        captured_lines = deque(maxlen=self.ERROR_LOG_SIZE)
        process = None

        try:
            with subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=cwd,
                bufsize=1
            ) as proc:
                process = proc

                while True:
                    if timeout:
                        run_time = time.time() - start_time
                        if run_time > timeout:
                            raise subprocess.TimeoutExpired(cmd=args, timeout=timeout)
                        wait_time = timeout - run_time
                    else:
                        wait_time = self.IO_POLL_INTERVAL

                    rready, _, _ = select.select([process.stdout.fileno()], [], [], wait_time)
                    if not rready:
                        if process.poll() is not None:
                            break
                        continue

                    line = process.stdout.readline()
                    if not line:
                        break

                    sys.stdout.write(line)
                    sys.stdout.flush()
                    captured_lines.append(line)

            return_code = process.poll()

            if return_code != 0 and check:
                error_context = "".join(captured_lines).strip()
                raise RunnerError(f"Command failed (Code {return_code}).\nLast output:\n{error_context}")

            return return_code

        except subprocess.TimeoutExpired:
            self._terminate_process(process)

            error_context = "".join(captured_lines).strip()
            output_info = f"\nLast output:\n{error_context}" if error_context else ""
            logger.error(f"Command timed out after {timeout}s: {self._sanitize_args(args)}{output_info}")
            return 1
        except FileNotFoundError:
            raise RunnerError(f"Binary not found: {args[0]}")

    def attach(self):
        """Registers the ephemeral runner with the organization."""
        logger.info("[self-hosted runner] Attaching runner ...")
        runner_dir = self.config.resolve_runner_dir()

        token: str = self.github.get_token("registration")

        # Updates are shipped by rebuilding the image, hence --disableupdate
        cmd: List[str] = [
            str(runner_dir / "config.sh"),
            "--unattended",
            "--token", token,
            "--url", self.config.registration_url,
            "--replace",
            "--disableupdate",
            "--ephemeral",
        ]
        if self.config.runner_labels:
            cmd.extend(["--labels", self.config.runner_labels])
        if self.config.runner_group:
            cmd.extend(["--runnergroup", self.config.runner_group])

        logger.info(f"Executing: {self._sanitize_args(cmd)} (Timeout: {self.config.setup_timeout}s)")
        if (returncode := self._exec(cmd, cwd=runner_dir, timeout=self.config.setup_timeout)) != 0:
            raise RunnerError(f"Registration failed with code {returncode}")

        logger.info("[self-hosted runner] Runner attached.")

    def detach(self):
        """Unregisters the runner."""
        logger.info("[self-hosted runner] Removing runner ...")
        runner_dir = self.config.resolve_runner_dir()

        token: str = self.github.get_token("remove")
        cmd: List[str] = [str(runner_dir / "config.sh"), "remove", "--token", token]

        if (returncode := self._exec(cmd, cwd=runner_dir, timeout=self.config.deregister_timeout)) != 0:
            raise RunnerError(f"Removal failed with code {returncode}")

        logger.info("[self-hosted runner] Runner removed.")

    def _shutdown(self, process: subprocess.Popen, signum: Optional[int] = None):
        """Shutdown hook: detach first, then pass the received signal on to the runner."""
        try:
            self.detach()
        except RunnerError as e:
            logger.error(f"Failed to detach runner: {e}")
        self._terminate_process(process, signum)

    def start(self) -> int:
        """Attach, run the runner service until it exits, return its exit status."""
        self.attach()

        runner_dir = self.config.resolve_runner_dir()
        cmd: List[str] = [str(runner_dir / "bin" / "runsvc.sh")]
        env = self.config.child_env(os.environ)

        with SignalHandler() as handler:
            try:
                process = subprocess.Popen(cmd, cwd=runner_dir, env=env)
            except FileNotFoundError:
                raise RunnerError(f"Binary not found: {cmd[0]}")

            try:
                while process.poll() is None:
                    if handler.shutdown_requested:
                        self._shutdown(process, handler.received_signal)
                        break
                    try:
                        process.wait(timeout=self.IO_POLL_INTERVAL)
                    except subprocess.TimeoutExpired:
                        continue
            finally:
                self._terminate_process(process)

        status = exit_status(process.wait())
        logger.info(f"[self-hosted runner] Exiting with status {status} ...")
        return status

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Heroku-hosted GitHub Actions Runner Entrypoint")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("start", help="Attach the runner, run one job and detach on shutdown")
    subparsers.add_parser("attach", help="Register the runner")
    subparsers.add_parser("detach", help="Unregister the runner")

    args = parser.parse_args()
    command = args.command or "start"

    try:
        config = Config()
        config.validate()

        github = GitHubClient(config)
        service = RunnerService(config, github)

        if command == "start":
            sys.exit(service.start())
        elif command == "attach":
            service.attach()
        elif command == "detach":
            service.detach()
    except RunnerError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        sys.exit(130)
    except Exception:
        logger.exception("Unexpected error occurred.")
        sys.exit(1)

if __name__ == "__main__":
    main()
