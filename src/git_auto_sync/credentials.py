"""Credential candidates for authenticated fetch and push.

Remote operations shell out to git, so a credential is expressed as the
environment a git subprocess runs with. `iter_credentials` lazily yields
candidates in a fixed order and `run_authenticated` consumes them until the
remote accepts one.
"""

import enum
import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, TypeVar
from urllib.parse import urlsplit

from .constants import APP_NAME
from .errors import AuthExhaustedError
from .git_wrapper import GitCommandError, GitRepo

logger = logging.getLogger(APP_NAME)

T = TypeVar("T")

SSH_KEY_NAMES = ["id_ed25519", "id_ecdsa", "id_rsa"]
TOKEN_ENV_VARS = ["GIT_AUTO_SYNC_TOKEN", "GITHUB_TOKEN", "GH_TOKEN"]

_SCP_LIKE = re.compile(r"^(?:(?P<user>[^@/]+)@)?[^/:]+:(?!//)")

# Shell helper that answers git's credential protocol from the environment,
# so the secret never appears on a command line.
_TOKEN_HELPER = (
    "!f() { echo username=\"$GIT_AUTO_SYNC_USERNAME\"; "
    "echo password=\"$GIT_AUTO_SYNC_PASSWORD\"; }; f"
)


class CredentialType(enum.IntFlag):
    """Authentication methods a remote URL allows."""

    USERPASS_PLAINTEXT = 1
    SSH_KEY = 2
    DEFAULT = 4


@dataclass
class Credential:
    """A candidate credential.

    Attributes:
        kind (CredentialType): The method this candidate uses.
        description (str): Human-readable label for logs (never the secret).
        env (dict[str, str]): The complete environment for the git subprocess.
    """

    kind: CredentialType
    description: str
    env: dict[str, str] = field(repr=False)


def allowed_types(url: str) -> CredentialType:
    """Derives the allowed authentication methods from a remote URL."""
    scheme = urlsplit(url).scheme.lower()
    if scheme in ("http", "https"):
        return CredentialType.USERPASS_PLAINTEXT | CredentialType.DEFAULT
    if scheme in ("ssh", "git+ssh") or (not scheme and _SCP_LIKE.match(url)):
        return CredentialType.SSH_KEY | CredentialType.DEFAULT
    return CredentialType.DEFAULT


def username_from_url(url: str) -> str | None:
    """Extracts the user part of a remote URL, if it has one."""
    parts = urlsplit(url)
    if parts.scheme:
        return parts.username
    match = _SCP_LIKE.match(url)
    return match.group("user") if match else None


def _base_env() -> dict[str, str]:
    env = os.environ.copy()
    # Fail fast instead of hanging on a prompt nobody can answer.
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GCM_INTERACTIVE"] = "never"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def iter_credentials(
    url: str,
    username: str | None,
    allowed: CredentialType,
    ssh_dir: Path | None = None,
) -> Iterator[Credential]:
    """Yields candidate credentials for a remote, most ambient first.

    Order:
    1. The ambient environment (ssh-agent, configured git credential helpers).
    2. Each private key in `~/.ssh`, when SSH keys are allowed.
    3. Each token found in the environment, when user/password is allowed.

    Args:
        url (str): The remote URL.
        username (str | None): The user named in the URL, if any.
        allowed (CredentialType): Bitmask of allowed methods.
        ssh_dir (Path | None): Where to look for keys. Defaults to `~/.ssh`.
    """
    yield Credential(CredentialType.DEFAULT, "ambient credentials", _base_env())

    if CredentialType.SSH_KEY in allowed:
        ssh_dir = ssh_dir or Path.home() / ".ssh"
        for name in SSH_KEY_NAMES:
            key = ssh_dir / name
            if not key.is_file():
                continue
            env = _base_env()
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {shlex.quote(str(key))} -o IdentitiesOnly=yes -o BatchMode=yes"
            )
            yield Credential(CredentialType.SSH_KEY, f"ssh key {key.name}", env)

    if CredentialType.USERPASS_PLAINTEXT in allowed:
        seen = set()
        for var in TOKEN_ENV_VARS:
            token = os.environ.get(var)
            if not token or token in seen:
                continue
            seen.add(token)
            env = _base_env()
            env.update(
                {
                    "GIT_CONFIG_COUNT": "2",
                    "GIT_CONFIG_KEY_0": "credential.helper",
                    "GIT_CONFIG_VALUE_0": "",
                    "GIT_CONFIG_KEY_1": "credential.helper",
                    "GIT_CONFIG_VALUE_1": _TOKEN_HELPER,
                    "GIT_AUTO_SYNC_USERNAME": username or "x-access-token",
                    "GIT_AUTO_SYNC_PASSWORD": token,
                }
            )
            yield Credential(CredentialType.USERPASS_PLAINTEXT, f"token from ${var}", env)


def run_authenticated(
    repo: GitRepo,
    remote: str,
    action: Callable[[dict[str, str]], T],
    ssh_dir: Path | None = None,
) -> T:
    """Runs a remote operation, retrying with successive credentials.

    Args:
        repo (GitRepo): The repository whose remote is contacted.
        remote (str): The remote name.
        action (Callable): Performs the git operation given a subprocess env.
        ssh_dir (Path | None): Override for the ssh key directory.

    Returns:
        The action's return value for the first accepted credential.

    Raises:
        AuthExhaustedError: If every candidate was rejected.
        GitCommandError: If the action fails for a non-authentication reason.
    """
    url = repo.remote_url(remote)
    candidates = iter_credentials(url, username_from_url(url), allowed_types(url), ssh_dir)

    last_error: GitCommandError | None = None
    for credential in candidates:
        try:
            return action(credential.env)
        except GitCommandError as e:
            if not e.is_auth_failure:
                raise
            logger.info(f"AUTH: {url} rejected {credential.description}.")
            last_error = e

    raise AuthExhaustedError(url) from last_error
