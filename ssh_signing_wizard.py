#!/usr/bin/env python3
"""
SSH Signing Wizard - SSH commit signing for git

A terminal wizard that walks through:
  1. Preflight checks (git version, ssh-agent)
  2. Identity discovery for user.name / user.email
  3. ed25519 signing key generation
  4. ssh-agent registration
  5. Git signing configuration
  6. Verification

Usage:
    ssh-signing-wizard [--key-name NAME] [--comment TEXT] [--force]
                       [--skip-user-config] [--verbose]
"""

import json
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.padding import Padding
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

__version__ = "0.1.0"

console = Console()

# Set from --verbose; gates debug() output.
VERBOSE = False


# ─── Paths & Constants ───────────────────────────────────────────────────────
SSH_DIR         = Path.home() / ".ssh"
KEY_PREFIX      = "git_signing_"
KEY_ALGORITHM   = "ed25519"
MIN_GIT_VERSION = (2, 34)

# Domain used to guess an email from a bare DOMAIN\user account name.
PLACEHOLDER_DOMAIN = os.environ.get("GIT_SIGNING_PLACEHOLDER_DOMAIN", "company.com")
PRINCIPAL_ENV_VARS = ("USERPRINCIPALNAME", "UPN")

GITHUB_SIGNING_KEY_URL = "https://github.com/settings/ssh/new"

GIT_INSTALL_HINT = "https://git-scm.com/downloads"
WINDOWS_AGENT_REMEDY = (
    "Get-Service ssh-agent | Set-Service -StartupType Automatic; "
    "Start-Service ssh-agent   (in an elevated PowerShell)"
)
POSIX_AGENT_REMEDY = 'eval "$(ssh-agent -s)"'

EMAIL_RE       = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_RE    = re.compile(r"^[A-Za-z0-9._%+-]+$")
JOINED_NAME_RE = re.compile(r"^[^\\\s]+\\([^\\\s]+)$")
GIT_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")
AGENT_ENV_RE   = re.compile(r"(SSH_AUTH_SOCK|SSH_AGENT_PID)=([^;\s]+)")


# ─── Errors ──────────────────────────────────────────────────────────────────
class SetupError(Exception):
    """Base error. `remedy` is the command the operator can run by hand."""

    def __init__(self, message, remedy=None):
        super().__init__(message)
        self.remedy = remedy


class ToolMissing(SetupError):
    """A required executable could not be run. Fatal."""


class VersionTooOld(SetupError):
    """git is older than the first release with SSH signing."""


class KeyGenerationFailed(SetupError):
    """ssh-keygen failed. Fatal; nothing is configured afterwards."""


class AgentUnavailable(SetupError):
    """ssh-agent is not reachable or refused the key."""


class ConfigWriteFailed(SetupError):
    def __init__(self, key, value, detail=""):
        message = f"Could not set {key}"
        if detail:
            message += f": {detail}"
        super().__init__(message, remedy=f'git config --global {key} "{value}"')
        self.key = key


# ─── Shell Helpers ───────────────────────────────────────────────────────────
@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self):
        return self.returncode == 0

    @property
    def output(self):
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def run_command(args, cwd=None):
    """Run a command without a shell. A missing executable comes back as exit 127."""
    args = [str(a) for a in args]
    debug("$ " + " ".join(args))
    try:
        r = subprocess.run(args, cwd=cwd, capture_output=True,
                           encoding="utf-8", errors="replace")
    except OSError as e:
        return CommandResult(args, 127, "", str(e))
    return CommandResult(args, r.returncode, r.stdout.strip(), r.stderr.strip())


def is_email(value):
    return bool(value) and EMAIL_RE.match(value) is not None


def parse_git_version(text):
    """'git version 2.39.2.windows.1' -> (2, 39, 2). None if no version in text."""
    m = GIT_VERSION_RE.search(text or "")
    if not m:
        return None
    return tuple(int(part) for part in m.groups() if part is not None)


def parse_agent_env(text):
    """Pull SSH_AUTH_SOCK / SSH_AGENT_PID out of `ssh-agent -s` output."""
    return dict(AGENT_ENV_RE.findall(text))


def config_bool(value):
    return "true" if value else "false"


# ─── Output Helpers ──────────────────────────────────────────────────────────
def phase(num, title, subtitle=""):
    text = f"[bold cyan]STEP {num}[/]  [bold white]{title}[/]"
    if subtitle:
        text += f"\n[dim]{subtitle}[/]"
    console.print()
    console.print(Panel(text, box=box.ROUNDED, border_style="cyan", padding=(0, 2)))


def ok(msg):
    console.print(f"  [green]✓[/] {msg}")


def info(msg):
    console.print(f"  [cyan]›[/] {msg}")


def warn(msg):
    console.print(f"  [yellow]![/] {msg}")


def fail(msg):
    console.print(f"  [red]✗[/] {msg}")


def dim(msg):
    console.print(f"  [dim]{msg}[/]")


def debug(msg):
    if VERBOSE:
        console.print(f"  [dim]· {escape(msg)}[/]", highlight=False)


def report(err):
    """Print a non-fatal SetupError as a warning plus its remedy."""
    warn(escape(str(err)))
    if err.remedy:
        dim(f"Run: {escape(err.remedy)}")


# ─── Prompts ─────────────────────────────────────────────────────────────────
class RichPrompter:
    """Interactive questions on the terminal."""

    def ask(self, question, default=None):
        return Prompt.ask(f"  [bold]{question}[/]", default=default, console=console)

    def confirm(self, question, default=True):
        return Confirm.ask(f"  {question}", default=default, console=console)


# ─── External Tools ──────────────────────────────────────────────────────────
class Git:
    """The git executable itself."""

    def __init__(self, run=run_command):
        self.run = run

    def version_text(self):
        r = self.run(["git", "--version"])
        return r.stdout if r.ok else None


class GitConfig:
    """Global git config, read and written one key at a time."""

    def __init__(self, run=run_command):
        self.run = run

    def get(self, key):
        r = self.run(["git", "config", "--global", "--get", key])
        return (r.stdout or None) if r.ok else None

    def set(self, key, value):
        r = self.run(["git", "config", "--global", key, value])
        if not r.ok:
            raise ConfigWriteFailed(key, value, r.stderr)


class SshKeygen:
    def __init__(self, run=run_command):
        self.run = run

    def generate(self, private_key, comment):
        """Create an ed25519 pair at private_key with an empty passphrase."""
        r = self.run([
            "ssh-keygen", "-q",
            "-t", KEY_ALGORITHM,
            "-C", comment,
            "-f", str(private_key),
            "-N", "",
        ])
        if r.returncode == 127:
            raise KeyGenerationFailed(
                "ssh-keygen not found. Install the OpenSSH client.",
                remedy="https://www.openssh.com/portable.html",
            )
        if not r.ok:
            raise KeyGenerationFailed(
                f"ssh-keygen exited with {r.returncode}: {r.stderr or 'no output'}",
                remedy=f'ssh-keygen -t {KEY_ALGORITHM} -C "{comment}" -f {private_key}',
            )

    def public_key_of(self, private_key):
        r = self.run(["ssh-keygen", "-y", "-f", str(private_key)])
        if not r.ok or not r.stdout:
            raise KeyGenerationFailed(
                f"Could not read the public half of {private_key}: {r.stderr or 'no output'}",
                remedy=f"ssh-keygen -y -f {private_key}",
            )
        return r.stdout


class SshAgent:
    """ssh-agent status, startup and ssh-add.

    Windows runs the agent as a service; everywhere else the agent is a
    per-session process found through SSH_AUTH_SOCK.
    """

    def __init__(self, run=run_command, system=None, environ=None):
        self.run = run
        self.system = system or platform.system()
        self.environ = os.environ if environ is None else environ

    @property
    def windows(self):
        return self.system == "Windows"

    def is_running(self):
        if self.windows:
            r = self.run([
                "powershell", "-NoProfile", "-Command",
                "(Get-Service ssh-agent).Status",
            ])
            return r.ok and r.stdout == "Running"
        # ssh-add -l exits 1 for an empty agent, 2 when there is no agent
        return self.run(["ssh-add", "-l"]).returncode in (0, 1)

    def start(self):
        if self.windows:
            r = self.run([
                "powershell", "-NoProfile", "-Command",
                "Set-Service ssh-agent -StartupType Automatic; Start-Service ssh-agent",
            ])
            if not r.ok:
                raise AgentUnavailable(
                    "Could not start the ssh-agent service (needs an elevated shell).",
                    remedy=WINDOWS_AGENT_REMEDY,
                )
            return

        r = self.run(["ssh-agent", "-s"])
        found = parse_agent_env(r.stdout) if r.ok else {}
        if "SSH_AUTH_SOCK" not in found:
            raise AgentUnavailable("Could not start ssh-agent.", remedy=POSIX_AGENT_REMEDY)
        # later ssh-add calls inherit this process's environment
        self.environ.update(found)

    def add(self, private_key):
        r = self.run(["ssh-add", str(private_key)])
        if not r.ok:
            remedy = f"ssh-add {private_key}"
            if not self.windows:
                remedy = f"{POSIX_AGENT_REMEDY} && {remedy}"
            raise AgentUnavailable(
                f"ssh-add failed: {r.stderr or 'agent not reachable'}", remedy=remedy,
            )


# ═════════════════════════════════════════════════════════════════════════════
#  Identity probes
# ═════════════════════════════════════════════════════════════════════════════
class IdentitySource(Enum):
    UPN = "upn"
    WINDOWS_IDENTITY = "windows-identity"
    ENVIRONMENT_VARIABLE = "environment"
    CLOUD_CLI = "cloud-cli"
    MANUAL = "manual"
    UNSET = "unset"


@dataclass
class Identity:
    name: Optional[str] = None
    email: Optional[str] = None
    source: IdentitySource = IdentitySource.UNSET
    # the email is a guess built from an account name
    needs_confirmation: bool = False
    # name of the probe that made the guess
    guessed_by: Optional[str] = None

    @property
    def complete(self):
        return bool(self.name and self.email)


@dataclass
class Candidate:
    """What a single probe found."""

    name: Optional[str] = None
    email: Optional[str] = None
    placeholder: bool = False


@dataclass
class ProbeContext:
    run: Callable = run_command
    environ: dict = field(default_factory=lambda: dict(os.environ))
    placeholder_domain: str = PLACEHOLDER_DOMAIN


@dataclass
class Probe:
    name: str
    source: IdentitySource
    fields: tuple
    lookup: Callable


def probe_upn(ctx):
    """Directory-joined machines answer `whoami /upn` with user@domain."""
    r = ctx.run(["whoami", "/upn"])
    if not r.ok:
        debug(f"upn: whoami /upn exited with {r.returncode}")
        return None
    if not is_email(r.stdout):
        debug(f"upn: {r.stdout!r} is not an email address")
        return None
    return Candidate(email=r.stdout)


def probe_windows_identity(ctx):
    r = ctx.run(["whoami"])
    m = JOINED_NAME_RE.match(r.stdout) if r.ok else None
    if not m:
        debug(f"windows-identity: no DOMAIN\\user account in {r.stdout!r}")
        return None
    username = m.group(1)
    if not USERNAME_RE.match(username):
        return Candidate(name=username)
    return Candidate(
        name=username,
        email=f"{username}@{ctx.placeholder_domain}",
        placeholder=True,
    )


def probe_environment(ctx):
    for var in PRINCIPAL_ENV_VARS:
        value = ctx.environ.get(var, "").strip()
        if is_email(value):
            return Candidate(email=value)
        if value:
            debug(f"environment: {var}={value!r} is not an email address")

    user = ctx.environ.get("USERNAME") or ctx.environ.get("USER")
    domain = ctx.environ.get("USERDNSDOMAIN")
    if user and domain:
        guess = f"{user}@{domain.lower()}"
        if is_email(guess):
            return Candidate(email=guess)
    debug("environment: no principal name variables set")
    return None


def probe_cloud_cli(ctx):
    """`az account show` lists the signed-in account under user.name."""
    # az is a .cmd shim on Windows; resolve it so it runs without a shell
    az = shutil.which("az") or "az"
    r = ctx.run([az, "account", "show", "--output", "json"])
    if not r.ok:
        debug(f"cloud-cli: az account show exited with {r.returncode}")
        return None
    try:
        account = json.loads(r.stdout)
    except ValueError:
        debug("cloud-cli: az returned something that isn't JSON")
        return None
    user = account.get("user") if isinstance(account, dict) else None
    name = user.get("name", "") if isinstance(user, dict) else ""
    if not is_email(name):
        debug(f"cloud-cli: account name {name!r} is not an email address")
        return None
    return Candidate(email=name)


DEFAULT_PROBES = [
    Probe("upn", IdentitySource.UPN, ("email",), probe_upn),
    Probe("windows-identity", IdentitySource.WINDOWS_IDENTITY, ("name", "email"),
          probe_windows_identity),
    Probe("environment", IdentitySource.ENVIRONMENT_VARIABLE, ("email",), probe_environment),
    Probe("cloud-cli", IdentitySource.CLOUD_CLI, ("email",), probe_cloud_cli),
]


def run_probes(probes, ctx, identity):
    """Fill the empty fields of identity from probes, first success wins.

    A probe is only called while at least one of the fields it can supply is
    still empty, and never overwrites a field that is already set.
    """
    for probe in probes:
        if identity.complete:
            break
        missing = [f for f in probe.fields if not getattr(identity, f)]
        if not missing:
            continue
        try:
            found = probe.lookup(ctx)
        except (OSError, ValueError) as e:
            debug(f"{probe.name}: {e}")
            continue
        if found is None:
            continue

        taken = []
        for f in missing:
            value = getattr(found, f)
            if value:
                setattr(identity, f, value)
                taken.append(f)
        if not taken:
            continue
        if "email" in taken and found.placeholder:
            identity.needs_confirmation = True
            identity.guessed_by = probe.name
        if identity.source is IdentitySource.UNSET:
            identity.source = probe.source
        debug(f"{probe.name}: found {', '.join(taken)}")
    return identity


# ═════════════════════════════════════════════════════════════════════════════
#  STEP 2 - Identity
# ═════════════════════════════════════════════════════════════════════════════
def ask_name(prompter, default=None):
    while True:
        name = (prompter.ask("Full name", default=default) or "").strip()
        if name:
            return name
        warn("A name is required")


def ask_email(prompter, default=None):
    while True:
        email = (prompter.ask("Email", default=default) or "").strip()
        if is_email(email):
            return email
        warn(f"{escape(repr(email))} doesn't look like an email address")


def confirm_placeholder(identity, prompter):
    """A guessed email is only kept after the operator says yes.

    On a no the guess is dropped and False is returned.
    """
    warn(f"Guessed {escape(identity.email)} from your domain account name")
    accepted = prompter.confirm(f"Use {identity.email} as your git email?", default=False)
    if not accepted:
        identity.email = None
    identity.needs_confirmation = False
    identity.guessed_by = None
    return accepted


def probes_after(probes, name):
    names = [p.name for p in probes]
    if name not in names:
        return []
    return probes[names.index(name) + 1:]


def save_identity(store, identity, existing_name, existing_email):
    for key, value, before in (
        ("user.name", identity.name, existing_name),
        ("user.email", identity.email, existing_email),
    ):
        if not value or value == before:
            continue
        try:
            store.set(key, value)
        except ConfigWriteFailed as e:
            report(e)
        else:
            ok(f"{key} set to {value}")


def resolve_identity(existing_name, existing_email, force_refresh, *,
                     store, prompter, context=None, probes=None):
    """Work out user.name / user.email and write any new values to the store.

    Existing values are returned untouched unless force_refresh is set.
    Otherwise the probes run in priority order, a guessed email is confirmed,
    a rejected guess falls through to the remaining probes, and whatever
    is still missing is asked for.
    """
    if existing_name and existing_email and not force_refresh:
        dim(f"Current git config: {existing_name} <{existing_email}>")
        return Identity(existing_name, existing_email)

    context = context or ProbeContext()
    probes = DEFAULT_PROBES if probes is None else probes

    if force_refresh:
        identity = Identity()
    else:
        identity = Identity(existing_name or None, existing_email or None)
    run_probes(probes, context, identity)

    # a rejected guess hands email back to the lower-priority probes
    while identity.needs_confirmation:
        rest = probes_after(probes, identity.guessed_by)
        if confirm_placeholder(identity, prompter):
            break
        run_probes(rest, context, identity)

    if not identity.name or not identity.email:
        info("Couldn't detect everything. Fill in the rest:")
        if not identity.name:
            identity.name = ask_name(prompter, default=existing_name)
        if not identity.email:
            identity.email = ask_email(prompter, default=existing_email)
        if identity.source is IdentitySource.UNSET:
            identity.source = IdentitySource.MANUAL

    save_identity(store, identity, existing_name, existing_email)
    return identity


# ═════════════════════════════════════════════════════════════════════════════
#  STEP 3 - Signing key
# ═════════════════════════════════════════════════════════════════════════════
@dataclass
class KeyMaterial:
    private_key_path: Path
    public_key_path: Path
    comment: str
    algorithm: str = KEY_ALGORITHM
    has_passphrase: bool = False
    reused: bool = False

    @property
    def public_key(self):
        return self.public_key_path.read_text().strip()


def default_key_name(now=None):
    return KEY_PREFIX + (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def default_comment(email, today=None):
    stamp = (today or date.today()).isoformat()
    if email:
        return f"{email} - Git Signing {stamp}"
    return f"Git Signing {stamp}"


def public_key_path(private_key):
    return private_key.with_name(private_key.name + ".pub")


def reuse_key(key, keygen):
    if not key.private_key_path.exists():
        raise KeyGenerationFailed(
            f"{key.public_key_path} exists without its private key.",
            remedy="re-run with --force, or pick another --key-name",
        )
    if not key.public_key_path.exists():
        key.public_key_path.write_text(keygen.public_key_of(key.private_key_path) + "\n")
        ok("Recreated the missing public key")

    parts = key.public_key.split(None, 2)
    if len(parts) == 3:
        key.comment = parts[2]
    key.reused = True
    ok("Keeping existing key")
    return key


def provision_key(key_dir, key_name, comment, overwrite, *, keygen, prompter):
    """Generate <key_dir>/<key_name>, or reuse it if it's there and we're told to."""
    key_dir = Path(key_dir)
    key_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    private_key = key_dir / key_name
    key = KeyMaterial(private_key, public_key_path(private_key), comment)

    if private_key.exists() or key.public_key_path.exists():
        warn(f"Key already exists: {private_key}")
        if not overwrite and not prompter.confirm("Overwrite it with a new key?", default=False):
            return reuse_key(key, keygen)
        private_key.unlink(missing_ok=True)
        key.public_key_path.unlink(missing_ok=True)
        ok("Old key removed")

    info(f"Generating {KEY_ALGORITHM} key...")
    dim("No passphrase: git and ssh-agent use this key unattended")
    keygen.generate(private_key, comment)
    if not (private_key.exists() and key.public_key_path.exists()):
        raise KeyGenerationFailed(f"ssh-keygen finished but {private_key} is missing.")
    ok(f"Key generated: {private_key}")
    return key


# ═════════════════════════════════════════════════════════════════════════════
#  STEP 1 + 4 - Preflight and ssh-agent
# ═════════════════════════════════════════════════════════════════════════════
def check_git_available(git):
    text = git.version_text()
    if not text:
        raise ToolMissing("Git not found. Install it and re-run.", remedy=GIT_INSTALL_HINT)
    ok(f"Git installed  ({text})")
    return text


def check_minimum_version(version_text, prompter, required=MIN_GIT_VERSION):
    """Warn below `required`; raises VersionTooOld only if the operator stops."""
    wanted = ".".join(str(n) for n in required)
    found = parse_git_version(version_text)
    if found is None:
        warn(f"Couldn't read the git version. SSH signing needs git {wanted}+")
        return None
    if found[:len(required)] >= tuple(required):
        return found

    err = VersionTooOld(
        f"git {'.'.join(str(n) for n in found)} is older than {wanted}; "
        f"SSH signing may not work",
        remedy=GIT_INSTALL_HINT,
    )
    report(err)
    if not prompter.confirm("Continue anyway?", default=False):
        raise err
    return found


def ensure_agent_running(agent):
    if agent.is_running():
        ok("ssh-agent is running")
        return True
    info("Starting ssh-agent...")
    try:
        agent.start()
    except AgentUnavailable as e:
        report(e)
        dim("The key can still be generated; add it to the agent later.")
        return False
    ok("ssh-agent started")
    return True


def register_key(agent, private_key):
    try:
        agent.add(private_key)
    except AgentUnavailable as e:
        report(e)
        return False
    ok("Key added to ssh-agent")
    return True


# ═════════════════════════════════════════════════════════════════════════════
#  STEP 5 - Git config
# ═════════════════════════════════════════════════════════════════════════════
@dataclass
class SigningConfig:
    signing_key: str
    format: str = "ssh"
    commit_sign: bool = True
    tag_sign: Optional[bool] = None
    allowed_signers_file: Optional[str] = None

    def entries(self):
        """(key, value) pairs in write order; unset optional keys are left out."""
        entries = [
            ("user.signingkey", self.signing_key),
            ("gpg.format", self.format),
            ("commit.gpgsign", config_bool(self.commit_sign)),
        ]
        if self.tag_sign is not None:
            entries.append(("tag.gpgsign", config_bool(self.tag_sign)))
        if self.allowed_signers_file:
            entries.append(("gpg.ssh.allowedSignersFile", self.allowed_signers_file))
        return entries


def apply_signing_config(store, config):
    """Write each entry on its own. Returns the keys that failed."""
    failed = []
    for key, value in config.entries():
        try:
            store.set(key, value)
        except ConfigWriteFailed as e:
            report(e)
            failed.append(key)
        else:
            debug(f"{key} = {value}")
    if failed:
        warn(f"{len(failed)} git config value(s) not written")
    else:
        ok("Git config updated")
    return failed


def add_allowed_signer(path, email, public_key):
    """Append `email namespaces="git" <key>` unless the key is already listed."""
    path = Path(path)
    key_body = " ".join(public_key.split()[:2])
    existing = path.read_text() if path.exists() else ""
    if key_body in existing:
        return False
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    with open(path, "a") as f:
        if existing and not existing.endswith("\n"):
            f.write("\n")
        f.write(f'{email} namespaces="git" {key_body}\n')
    return True


SUMMARY_KEYS = [
    "user.name", "user.email", "user.signingkey",
    "gpg.format", "commit.gpgsign", "tag.gpgsign",
]


def show_config(store):
    console.print()
    table = Table(box=box.SIMPLE, padding=(0, 2), show_header=False)
    table.add_column(style="dim")
    table.add_column(style="white")
    for key in SUMMARY_KEYS:
        table.add_row(key, store.get(key) or "[dim]not set[/]")
    console.print(Padding(table, (0, 4)))


def show_public_key(key):
    console.print()
    info("Your public signing key:")
    console.print(key.public_key, markup=False, highlight=False, soft_wrap=True)
    console.print()
    console.print(Panel(
        f"[bold]Add it on GitHub:[/]  {GITHUB_SIGNING_KEY_URL}\n\n"
        "  1. Click [bold]New SSH key[/]\n"
        "  2. [bold]Key type[/]: Signing Key\n"
        f"  3. [bold]Key[/]:      paste the line above, or the contents of\n"
        f"     [dim]{key.public_key_path}[/]\n"
        "  4. Click [bold]Add SSH key[/]",
        title="[bold yellow] Action Required: GitHub [/]",
        border_style="yellow",
        box=box.HEAVY,
        padding=(1, 2),
    ))


# ═════════════════════════════════════════════════════════════════════════════
#  STEP 6 - Verification
# ═════════════════════════════════════════════════════════════════════════════
class Verification(Enum):
    VERIFIED = "verified"
    INCONCLUSIVE = "inconclusive"


def verify_signing(run=run_command):
    """Commit once in a throwaway repo and look for a signature in the log."""
    with tempfile.TemporaryDirectory(prefix="git-signing-check-",
                                     ignore_cleanup_errors=True) as tmp:
        (Path(tmp) / "README.md").write_text("signing check\n")
        for args in (
            ["git", "init", "-q"],
            ["git", "add", "README.md"],
            ["git", "commit", "-q", "-m", "Signing check"],
        ):
            r = run(args, cwd=tmp)
            if not r.ok:
                debug(f"{' '.join(args)} failed: {r.stderr}")
                return Verification.INCONCLUSIVE

        log = run(["git", "log", "--show-signature", "-1"], cwd=tmp)
        if "signature" in log.output.lower():
            return Verification.VERIFIED
        return Verification.INCONCLUSIVE


# ═════════════════════════════════════════════════════════════════════════════
#  Pipeline
# ═════════════════════════════════════════════════════════════════════════════
@dataclass
class SetupOptions:
    key_name: Optional[str] = None
    comment: Optional[str] = None
    force: bool = False
    skip_user_config: bool = False
    sign_tags: Optional[bool] = None
    key_dir: Path = SSH_DIR
    allowed_signers: bool = False
    verify: bool = True


@dataclass
class Toolbox:
    """Everything the pipeline talks to outside this process."""

    git: Git
    store: GitConfig
    keygen: SshKeygen
    agent: SshAgent
    prompter: RichPrompter
    probe_context: ProbeContext = field(default_factory=ProbeContext)
    probes: list = field(default_factory=lambda: list(DEFAULT_PROBES))
    verifier: Callable = verify_signing

    @classmethod
    def default(cls):
        return cls(
            git=Git(),
            store=GitConfig(),
            keygen=SshKeygen(),
            agent=SshAgent(),
            prompter=RichPrompter(),
        )


def run_setup(options, tools):
    """Preflight, identity, key, agent, config, verify. In that order, once.

    Returns the Verification result, or None when verification was skipped.
    ToolMissing and KeyGenerationFailed propagate; everything else is
    reported where it happens.
    """
    phase(1, "Preflight Checks", "git and ssh-agent")
    version_text = check_git_available(tools.git)
    check_minimum_version(version_text, tools.prompter)
    ensure_agent_running(tools.agent)

    phase(2, "Your Identity", "Used for the key comment and git config")
    existing_name = tools.store.get("user.name")
    existing_email = tools.store.get("user.email")
    if options.skip_user_config:
        dim("Leaving user.name and user.email as they are")
        identity = Identity(existing_name, existing_email)
    else:
        identity = resolve_identity(
            existing_name, existing_email, options.force,
            store=tools.store,
            prompter=tools.prompter,
            context=tools.probe_context,
            probes=tools.probes,
        )
    console.print(f"  Using: [bold]{identity.name or '-'}[/] <[bold]{identity.email or '-'}[/]>")

    phase(3, "Signing Key", "An ed25519 key just for signing")
    key = provision_key(
        options.key_dir,
        options.key_name or default_key_name(),
        options.comment or default_comment(identity.email),
        options.force,
        keygen=tools.keygen,
        prompter=tools.prompter,
    )

    phase(4, "ssh-agent", "So git can use the key without asking")
    register_key(tools.agent, key.private_key_path)

    phase(5, "Git Signing Config", "Sign every commit with the new key")
    sign_tags = options.sign_tags
    if sign_tags is None:
        sign_tags = tools.prompter.confirm("Sign tags too?", default=False)

    allowed_signers = None
    if options.allowed_signers:
        if identity.email:
            signers_file = Path(options.key_dir) / "allowed_signers"
            if add_allowed_signer(signers_file, identity.email, key.public_key):
                ok(f"Added {identity.email} to {signers_file}")
            allowed_signers = str(signers_file)
        else:
            warn("No user.email set; skipping allowed_signers")

    apply_signing_config(tools.store, SigningConfig(
        signing_key=str(key.public_key_path),
        tag_sign=True if sign_tags else None,
        allowed_signers_file=allowed_signers,
    ))
    show_config(tools.store)
    show_public_key(key)

    verification = None
    if options.verify:
        phase(6, "Verification", "A test commit in a throwaway repository")
        verification = tools.verifier()
        if verification is Verification.VERIFIED:
            ok("Test commit carries a signature")
        else:
            warn("Couldn't confirm a signed commit")
            dim("Try a commit yourself and run: git log --show-signature -1")

    done_summary(verification)
    return verification


# ═════════════════════════════════════════════════════════════════════════════
#  Welcome / Done
# ═════════════════════════════════════════════════════════════════════════════
def welcome():
    console.print(Panel(
        "[bold bright_cyan]SSH Signing Wizard[/]\n"
        "  [white]SSH commit signing for git[/]",
        box=box.DOUBLE, border_style="bright_blue", padding=(0, 2),
    ))
    console.print("  This wizard will:\n")
    console.print("  [white]1.[/] Check git and ssh-agent")
    console.print("  [white]2.[/] Fill in your git name and email")
    console.print("  [white]3.[/] Generate an ed25519 signing key")
    console.print("  [white]4.[/] Turn on signed commits")
    console.print()
    dim("You can re-run safely. Each run makes a new key.")


def done_summary(verification):
    console.print()
    if verification is Verification.INCONCLUSIVE:
        console.print(Panel(
            "[bold yellow]Almost there.[/]\n\n"
            "Git is configured, but the test commit didn't show a\n"
            "signature. Make a commit and check:\n"
            "  [dim]git log --show-signature -1[/]",
            title="[bold yellow] Needs Attention [/]",
            border_style="yellow",
            box=box.DOUBLE,
            padding=(1, 2),
        ))
    else:
        console.print(Panel(
            "[bold green]You're all set.[/]\n\n"
            "  [green]✓[/]  Commits are signed with your SSH key\n\n"
            "Upload the key as a [bold]Signing Key[/] to see the\n"
            "[green]Verified[/] badge on GitHub.",
            title="[bold green] Setup Complete [/]",
            border_style="green",
            box=box.DOUBLE,
            padding=(1, 2),
        ))
    console.print()


# ═════════════════════════════════════════════════════════════════════════════
#  Main
# ═════════════════════════════════════════════════════════════════════════════
@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--key-name", help="Key file name [default: git_signing_<timestamp>].")
@click.option("--comment", "--key-comment", "comment",
              help="Key comment [default: '<email> - Git Signing <date>'].")
@click.option("--force", is_flag=True,
              help="Overwrite an existing key without asking and re-detect name/email.")
@click.option("--skip-user-config", is_flag=True,
              help="Leave user.name and user.email untouched.")
@click.option("--sign-tags/--no-sign-tags", default=None,
              help="Also sign tags (asked when not given).")
@click.option("--key-dir", type=click.Path(file_okay=False, path_type=Path),
              default=SSH_DIR, show_default=True, help="Where to write the key pair.")
@click.option("--allowed-signers", is_flag=True,
              help="Add the key to <key-dir>/allowed_signers so git can check signatures.")
@click.option("--skip-verify", is_flag=True, help="Skip the test commit.")
@click.option("-v", "--verbose", is_flag=True, help="Show probe misses and commands run.")
@click.version_option(__version__)
def main(key_name, comment, force, skip_user_config, sign_tags, key_dir,
         allowed_signers, skip_verify, verbose):
    """Set up SSH commit signing for git."""
    global VERBOSE
    VERBOSE = verbose

    options = SetupOptions(
        key_name=key_name,
        comment=comment,
        force=force,
        skip_user_config=skip_user_config,
        sign_tags=sign_tags,
        key_dir=key_dir,
        allowed_signers=allowed_signers,
        verify=not skip_verify,
    )
    try:
        welcome()
        run_setup(options, Toolbox.default())
    except (ToolMissing, KeyGenerationFailed) as e:
        fail(str(e))
        if e.remedy:
            dim(f"Try: {e.remedy}")
        sys.exit(1)
    except VersionTooOld:
        console.print("\n  No changes made. Upgrade git and run again.\n")
        sys.exit(0)
    except KeyboardInterrupt:
        console.print("\n\n  [dim]Cancelled. Run again whenever you're ready.[/]\n")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n  [red]Something broke: {e}[/]")
        console.print("  [dim]Re-run the wizard. It's safe to retry.[/]\n")
        raise


if __name__ == "__main__":
    main()
