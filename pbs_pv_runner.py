#!/usr/bin/env python3
"""
pbs-pv-runner: backs up and restores node-local volumes with proxmox-backup-client
from a YAML config.

Key features:
- Discovery of ZFS zvols (per pool) and LVM-thin volumes (per VG)
  * Allow-prefixes (empty = allow all) + one optional exclude regex
- Fresh snapshot per volume (snapshot → stream → clean up)
  * The snapshot is released on every exit path, Ctrl-C and SIGTERM included
  * One failed volume never stops the others (unless on_failure: abort)
- One backup group per volume, one shared --backup-time per run
  * All archives of a run form one snapshot-set, addressable by time or "latest"
- Restore routing, first match wins:
  * explicit rule (provider + optional archive regex)
  * first target of the same provider type
  * default_target (cross-type restores allowed)
- Dry-run: prints plan, archive names and resolved routes, touches nothing
- Robust logging and optional notifications (Healthchecks, Discord)
"""

import argparse
import dataclasses
import datetime as dt
import enum
import fcntl
import json
import logging
import logging.handlers
import os
import re
import shlex
import signal
import socket
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

try:
    import yaml
except ImportError:
    print("Missing dependency: pyyaml. Install with: pip install pyyaml", file=sys.stderr)
    sys.exit(2)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3
EXIT_INTERRUPTED = 130

DEFAULT_LOCK_PATH = "/var/run/pbs-pv-runner.lock"
DEFAULT_PBC_BINARY = "proxmox-backup-client"

PROVIDER_TYPES = ("zfs", "lvmthin")

# =========================
# Errors
# =========================

class PvRunnerError(Exception):
    """Base class for everything pbs-pv-runner raises on purpose."""

class ConfigurationError(PvRunnerError):
    """Bad or incomplete configuration. Always raised before any work starts."""

class UnknownRepository(ConfigurationError):
    pass

class ProviderError(PvRunnerError):
    """A zfs/lvm command failed."""

class ArchiverError(PvRunnerError):
    """A proxmox-backup-client transfer or listing failed."""

class NoRouteFound(PvRunnerError):
    pass

class DestinationExists(PvRunnerError):
    pass

class SnapshotSetNotFound(PvRunnerError):
    pass

# =========================
# Shell & small utilities
# =========================

# Global to hold the lock file descriptor
_lockfile_fd = None

def acquire_single_instance_lock(lock_path: str = DEFAULT_LOCK_PATH):
    """
    Acquire an exclusive lock so only one backup/restore run touches the pools at a time.
    Uses fcntl file locking which is automatically released when the process exits.

    Exits with code 3 if the lock is held by another instance or cannot be taken.
    """
    global _lockfile_fd

    lock_file = Path(lock_path)
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"ERROR: Cannot create lock directory {lock_file.parent}: {e}", file=sys.stderr)
        sys.exit(EXIT_LOCKED)

    try:
        _lockfile_fd = open(str(lock_file), 'w')
        fcntl.flock(_lockfile_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

        # PID is only there for whoever inspects a stuck lock
        _lockfile_fd.write(f"{os.getpid()}\n")
        _lockfile_fd.flush()

        logging.debug("Acquired single-instance lock: %s", lock_path)

    except BlockingIOError:
        print("ERROR: Another instance of pbs-pv-runner is already running.", file=sys.stderr)
        print(f"Lock file: {lock_path}", file=sys.stderr)
        sys.exit(EXIT_LOCKED)
    except OSError as e:
        print(f"ERROR: Failed to acquire lock {lock_path}: {e}", file=sys.stderr)
        sys.exit(EXIT_LOCKED)

def sh(cmd, *, capture=False, env: Optional[Dict[str, str]] = None):
    """Run a command (list) with optional env overrides. Returns (rc, stdout, stderr)."""
    try:
        merged_env = os.environ.copy()
        if env:
            merged_env.update(env)
        logging.debug("SH: %s", shlex.join(cmd))
        if capture:
            cp = subprocess.run(cmd, shell=False, check=False,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=merged_env)
            logging.debug("SH rc=%s, stdout=%r, stderr=%r", cp.returncode, cp.stdout, cp.stderr)
            return cp.returncode, cp.stdout, cp.stderr
        cp = subprocess.run(cmd, shell=False, check=False, env=merged_env)
        logging.debug("SH rc=%s", cp.returncode)
        return cp.returncode, "", ""
    except FileNotFoundError as e:
        logging.error("Command not found: %s", e)
        return 127, "", str(e)

def sh_with_logging(cmd, *, env: Optional[Dict[str, str]] = None) -> int:
    """
    Run a command and stream its output line-by-line to the logging system.
    Returns exit code.
    """
    merged_env = os.environ.copy()
    if env:
        merged_env.update(env)

    logging.debug("SH_WITH_LOGGING: %s", shlex.join(cmd))
    try:
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            env=merged_env
        )
    except FileNotFoundError as e:
        logging.error("Command not found: %s", e)
        return 127

    try:
        if process.stdout:
            for line in process.stdout:
                line = line.rstrip('\n\r')
                if line:
                    logging.info(line)
        rc = process.wait()
    except BaseException:
        # Interrupted mid-transfer: do not leave the client running behind us
        process.kill()
        process.wait()
        raise
    logging.debug("SH_WITH_LOGGING rc=%s", rc)
    return rc

def sh_pipeline(producer: List[str], consumer: List[str], *,
                env: Optional[Dict[str, str]] = None) -> Tuple[int, int, str]:
    """
    Run `producer | consumer`, streaming the consumer's output to the log.
    Returns (producer_rc, consumer_rc, producer_stderr).
    """
    merged_env = os.environ.copy()
    if env:
        merged_env.update(env)

    logging.debug("SH_PIPELINE: %s | %s", shlex.join(producer), shlex.join(consumer))
    with tempfile.TemporaryFile() as errf:
        try:
            p1 = subprocess.Popen(producer, stdout=subprocess.PIPE, stderr=errf, env=merged_env)
        except FileNotFoundError as e:
            logging.error("Command not found: %s", e)
            return 127, 127, str(e)
        try:
            p2 = subprocess.Popen(consumer, stdin=p1.stdout, stdout=subprocess.PIPE,
                                  stderr=subprocess.STDOUT, text=True)
        except FileNotFoundError as e:
            p1.kill()
            p1.wait()
            logging.error("Command not found: %s", e)
            return 127, 127, str(e)
        # producer gets SIGPIPE if the consumer dies
        p1.stdout.close()

        try:
            for line in p2.stdout:
                line = line.rstrip('\n\r')
                if line:
                    logging.info(line)
            rc2 = p2.wait()
            rc1 = p1.wait()
        except BaseException:
            for p in (p2, p1):
                p.kill()
                p.wait()
            raise

        errf.seek(0)
        err = errf.read().decode("utf-8", errors="replace")
    logging.debug("SH_PIPELINE rc=%s|%s", rc1, rc2)
    return rc1, rc2, err

def wait_for_device(dev: Path, timeout: float = 5.0, delay: float = 0.1):
    """Poke udev until a freshly created block device node shows up."""
    start = time.monotonic()
    warned = False
    while time.monotonic() - start < timeout:
        if dev.exists():
            return
        if not warned and time.monotonic() - start > 1.0:
            logging.info("Device %s not ready, waiting...", dev)
            warned = True
        sh(["udevadm", "trigger", "--subsystem-match=block", "--action=add"], capture=True)
        sh(["udevadm", "settle"], capture=True)
        time.sleep(delay)
    raise ProviderError(f"device node did not appear: {dev}")

def masked(s: Optional[str]) -> str:
    if not s:
        return ""
    if len(s) <= 4:
        return "*" * len(s)
    return s[:2] + "*" * (len(s) - 4) + s[-2:]

# =========================
# Label / ID sanitization
# =========================

_BACKUP_ID_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")
_BACKUP_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")
_REPO_ALIAS_RE = re.compile(r"^[A-Za-z0-9_-]{1,32}$")

def sanitize_backup_id(s: str) -> str:
    """PBS-safe backup-id token: [A-Za-z0-9._-], must start with alnum or '_'."""
    if not s:
        return "x"
    s = _BACKUP_ID_CHARS_RE.sub("_", s)
    if not (s[0].isalnum() or s[0] == "_"):
        s = "x_" + s
    return s

def expand_template(tpl: str, *, host: str = "") -> str:
    """Only {host} is expanded: ns and backup_id must stay the same from run to run."""
    repl = {"host": host}
    out = tpl
    for k, v in repl.items():
        out = out.replace("{" + k + "}", v)
    return out

# =========================
# Data model
# =========================

@dataclasses.dataclass(frozen=True)
class Volume:
    name: str       # pool/VG qualified: tank/vm-100-disk-0, pve/vm-100-disk-0
    provider: str   # zfs | lvmthin
    source: str     # pool or VG it was discovered in
    leaf: str       # last path component, what filters and archive names see
    size: int       # bytes
    uid: str        # 8 hex digits of the ZFS guid / LVM uuid
    in_scope: bool = False

@dataclasses.dataclass(frozen=True)
class Snapshot:
    volume: Volume
    name: str                    # tank/vm-1@pvbkp-... or pve/vm-1-pvbkp-...
    device: Path                 # block device the archiver reads from
    clone: Optional[str] = None  # zfs only: read-only clone exposing the snapshot as a device

@dataclasses.dataclass(frozen=True)
class Archive:
    name: str            # zfs_vm-100-disk-0__85a081ee.img
    provider: str
    leaf: str = ""
    size: int = 0
    backup_id: str = ""  # backup group holding it in the repository

@dataclasses.dataclass(frozen=True)
class SnapshotSetRef:
    """All archives written with the same --backup-time by one backup run."""
    backup_time: int
    archives: Tuple[Archive, ...] = ()

    @property
    def label(self) -> str:
        return format_epoch(self.backup_time)

    def find(self, archive_name: str) -> Optional[Archive]:
        for a in self.archives:
            if a.name == archive_name:
                return a
        return None

@dataclasses.dataclass(frozen=True)
class Ack:
    archive: str
    backup_id: str
    backup_time: int

@dataclasses.dataclass(frozen=True)
class VolumeHandle:
    target: str
    name: str
    device: Path
    created: bool

@dataclasses.dataclass(frozen=True)
class RestoreTarget:
    name: str
    type: str
    root: Optional[str] = None      # zfs: parent dataset for restored zvols
    vg: Optional[str] = None        # lvmthin
    thinpool: Optional[str] = None  # lvmthin

    def describe(self) -> str:
        if self.type == "zfs":
            return f"zfs:{self.root}"
        return f"lvmthin:{self.vg}/{self.thinpool}"

@dataclasses.dataclass(frozen=True)
class RestoreRule:
    match_provider: str
    target: str
    match_archive_regex: Optional[re.Pattern] = None

    def matches(self, archive: Archive) -> bool:
        if archive.provider != self.match_provider:
            return False
        return self.match_archive_regex is None or self.match_archive_regex.search(archive.name) is not None

TIER_RULE = "rule"
TIER_SAME_TYPE = "same-type-default"
TIER_GLOBAL = "global-default"

@dataclasses.dataclass(frozen=True)
class RestoreResolution:
    archive: str
    target: str
    tier: str

# =========================
# Configuration
# =========================

@dataclasses.dataclass(frozen=True)
class RepoConfig:
    alias: str
    repository: str
    password: Optional[str] = None
    fingerprint: Optional[str] = None

    def env(self) -> Dict[str, str]:
        env = {"PBS_REPOSITORY": self.repository}
        if self.password:
            env["PBS_PASSWORD"] = self.password
        if self.fingerprint:
            env["PBS_FINGERPRINT"] = self.fingerprint
        return env

@dataclasses.dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    file: Optional[str] = None
    rotate_max_bytes: int = 10 * 1024 * 1024
    rotate_backups: int = 5

@dataclasses.dataclass(frozen=True)
class NotifyConfig:
    healthcheck_url: str = ""
    discord_webhook: str = ""
    discord_notify_on: Tuple[str, ...] = ()
    discord_prefix: str = ""

ON_FAILURE_POLICIES = ("continue", "abort")

@dataclasses.dataclass(frozen=True)
class Config:
    """Validated, read-only view of the YAML config. Build it with load_config()."""
    repos: Mapping[str, RepoConfig]
    default_repo: Optional[str] = None
    ns: Optional[str] = None
    backup_id: str = "pv"
    keyfile: Optional[Path] = None
    pv_prefixes: Tuple[str, ...] = ()
    pv_exclude_re: Optional[re.Pattern] = None
    zfs_pools: Tuple[str, ...] = ()
    lvm_vgs: Tuple[str, ...] = ()
    restore_targets: Mapping[str, RestoreTarget] = dataclasses.field(default_factory=dict)
    restore_rules: Tuple[RestoreRule, ...] = ()
    default_target: Optional[str] = None
    pbc_binary: str = DEFAULT_PBC_BINARY
    lock_path: str = DEFAULT_LOCK_PATH
    orphan_max_age_hours: int = 24
    on_failure: str = "continue"
    log: LogConfig = LogConfig()
    notify: NotifyConfig = NotifyConfig()

    def resolve_repository(self, alias: Optional[str] = None) -> RepoConfig:
        known = "|".join(sorted(self.repos))
        if alias:
            repo = self.repos.get(alias)
            if repo is None:
                raise UnknownRepository(f"unknown repository '{alias}'; known: {known}")
            return repo
        if self.default_repo:
            repo = self.repos.get(self.default_repo)
            if repo is None:
                raise UnknownRepository(f"default_repo='{self.default_repo}' not found in pbs.repos")
            return repo
        if len(self.repos) == 1:
            return next(iter(self.repos.values()))
        raise UnknownRepository(f"no repository given and no default_repo set; choose one of: {known}")

    def sources(self) -> List[Tuple[str, str]]:
        """Discovery sources in processing order: ZFS pools first, then LVM VGs."""
        return [("zfs", p) for p in self.zfs_pools] + [("lvmthin", vg) for vg in self.lvm_vgs]

    def redacted(self) -> dict:
        out = {
            "defaults": {
                "log": dataclasses.asdict(self.log),
                "pbc_binary": self.pbc_binary,
                "lock_path": self.lock_path,
                "orphan_max_age_hours": self.orphan_max_age_hours,
                "on_failure": self.on_failure,
            },
            "pbs": {
                "repos": {
                    alias: {
                        "repository": r.repository,
                        "password": "<redacted>" if r.password else "<none>",
                        "fingerprint": r.fingerprint,
                    }
                    for alias, r in sorted(self.repos.items())
                },
                "default_repo": self.default_repo,
                "ns": self.ns,
                "backup_id": self.backup_id,
                "keyfile": str(self.keyfile) if self.keyfile else None,
                "pv_prefixes": list(self.pv_prefixes),
                "pv_exclude_re": self.pv_exclude_re.pattern if self.pv_exclude_re else None,
            },
        }
        if self.zfs_pools:
            out["zfs"] = {"pools": list(self.zfs_pools)}
        if self.lvm_vgs:
            out["lvmthin"] = {"vgs": list(self.lvm_vgs)}
        if self.restore_targets or self.restore_rules or self.default_target:
            targets = {}
            for name, t in self.restore_targets.items():
                d = {"type": t.type}
                for k in ("root", "vg", "thinpool"):
                    if getattr(t, k):
                        d[k] = getattr(t, k)
                targets[name] = d
            rules = []
            for r in self.restore_rules:
                d = {"match_provider": r.match_provider}
                if r.match_archive_regex is not None:
                    d["match_archive_regex"] = r.match_archive_regex.pattern
                d["target"] = r.target
                rules.append(d)
            out["restore"] = {"targets": targets, "rules": rules, "default_target": self.default_target}
        return out

def _trim_opt(v) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None

def _dedup(items) -> Tuple[str, ...]:
    seen = set()
    out = []
    for s in (str(x).strip() for x in (items or [])):
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return tuple(out)

def _section(raw: dict, key: str) -> dict:
    v = raw.get(key) or {}
    if not isinstance(v, dict):
        raise ConfigurationError(f"'{key}' must be a mapping")
    return v

def _resolve_path(base_dir: Path, p: str) -> Path:
    pb = Path(p)
    return pb if pb.is_absolute() else base_dir / pb

def _compile_regex(src, what: str) -> Optional[re.Pattern]:
    src = _trim_opt(src)
    if src is None:
        return None
    try:
        return re.compile(src)
    except re.error as e:
        raise ConfigurationError(f"bad {what}: {src!r}: {e}") from e

def _parse_repos(raw, base_dir: Path) -> Dict[str, RepoConfig]:
    if not raw:
        raise ConfigurationError("define at least one repository under pbs.repos")
    if not isinstance(raw, dict):
        raise ConfigurationError("pbs.repos must be a mapping of alias -> repository")
    repos: Dict[str, RepoConfig] = {}
    for raw_alias, meta in raw.items():
        alias = str(raw_alias).strip()
        if not _REPO_ALIAS_RE.match(alias):
            raise ConfigurationError(f"bad repo alias '{alias}': use [A-Za-z0-9_-], length 1..32")
        if alias in repos:
            raise ConfigurationError(f"duplicate repo entry '{alias}'")
        if isinstance(meta, dict):
            repository = _trim_opt(meta.get("repository"))
            password = _trim_opt(meta.get("password"))
            fingerprint = _trim_opt(meta.get("fingerprint"))
            password_file = _trim_opt(meta.get("password_file"))
            if password is None and password_file:
                pf = _resolve_path(base_dir, password_file)
                try:
                    password = pf.read_text().rstrip("\r\n")
                except OSError as e:
                    raise ConfigurationError(f"read PBS password for '{alias}' from {pf}: {e}") from e
        else:
            repository, password, fingerprint = _trim_opt(meta), None, None
        if not repository:
            raise ConfigurationError(f"empty repository for repo '{alias}'")
        repos[alias] = RepoConfig(alias, repository, password, fingerprint)
    return repos

def _parse_targets(raw) -> Dict[str, RestoreTarget]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError("restore.targets must be a mapping of name -> target")
    targets: Dict[str, RestoreTarget] = {}
    for raw_name, meta in raw.items():
        name = str(raw_name).strip()
        if not name:
            raise ConfigurationError("empty target name in restore.targets")
        if not isinstance(meta, dict):
            raise ConfigurationError(f"restore target '{name}' must be a mapping")
        ttype = _trim_opt(meta.get("type"))
        if ttype not in PROVIDER_TYPES:
            raise ConfigurationError(f"restore target '{name}': type must be one of {', '.join(PROVIDER_TYPES)}")
        if ttype == "zfs":
            root = _trim_opt(meta.get("root"))
            if not root:
                raise ConfigurationError(f"restore target '{name}': 'root' must not be empty")
            targets[name] = RestoreTarget(name, ttype, root=root.rstrip("/"))
        else:
            vg = _trim_opt(meta.get("vg"))
            thinpool = _trim_opt(meta.get("thinpool"))
            if not vg or not thinpool:
                raise ConfigurationError(f"restore target '{name}': 'vg' and 'thinpool' are required")
            targets[name] = RestoreTarget(name, ttype, vg=vg, thinpool=thinpool)
    return targets

def _parse_rules(raw, targets: Mapping[str, RestoreTarget]) -> Tuple[RestoreRule, ...]:
    if not raw:
        return ()
    if not isinstance(raw, list):
        raise ConfigurationError("restore.rules must be a list")
    rules = []
    for i, r in enumerate(raw):
        if not isinstance(r, dict):
            raise ConfigurationError(f"restore.rules[{i}] must be a mapping")
        prov = _trim_opt(r.get("match_provider"))
        if prov not in PROVIDER_TYPES:
            raise ConfigurationError(f"restore.rules[{i}]: match_provider must be one of {', '.join(PROVIDER_TYPES)}")
        tgt = _trim_opt(r.get("target"))
        if not tgt:
            raise ConfigurationError(f"restore.rules[{i}]: 'target' is required")
        if tgt not in targets:
            raise ConfigurationError(f"restore.rules[{i}]: unknown target '{tgt}'")
        rx = _compile_regex(r.get("match_archive_regex"), f"restore.rules[{i}].match_archive_regex")
        rules.append(RestoreRule(prov, tgt, rx))
    return tuple(rules)

def load_config(path: Path) -> Config:
    """Read and validate the YAML config. Raises ConfigurationError on anything off."""
    if not path.exists():
        raise ConfigurationError(f"Config not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    base_dir = path.resolve().parent
    host = socket.gethostname()

    defaults = _section(raw, "defaults")
    pbs = _section(raw, "pbs")

    repos = _parse_repos(pbs.get("repos"), base_dir)
    default_repo = _trim_opt(pbs.get("default_repo"))
    if default_repo and default_repo not in repos:
        raise ConfigurationError(f"default_repo='{default_repo}' not found in pbs.repos")

    ns = _trim_opt(pbs.get("ns"))
    if ns:
        ns = expand_template(ns, host=host)
    backup_id = expand_template(_trim_opt(pbs.get("backup_id")) or "{host}-pv", host=host)
    if not _BACKUP_ID_RE.match(backup_id):
        raise ConfigurationError(f"bad pbs.backup_id '{backup_id}': use [A-Za-z0-9._-]")
    keyfile = _trim_opt(pbs.get("keyfile"))

    zfs_pools: Tuple[str, ...] = ()
    if raw.get("zfs") is not None:
        zfs_pools = _dedup(_section(raw, "zfs").get("pools"))
        if not zfs_pools:
            raise ConfigurationError("zfs.pools must not be empty")
    lvm_vgs: Tuple[str, ...] = ()
    if raw.get("lvmthin") is not None:
        lvm_vgs = _dedup(_section(raw, "lvmthin").get("vgs"))
        if not lvm_vgs:
            raise ConfigurationError("lvmthin.vgs must not be empty")

    restore = _section(raw, "restore")
    targets = _parse_targets(restore.get("targets"))
    rules = _parse_rules(restore.get("rules"), targets)
    default_target = _trim_opt(restore.get("default_target"))
    if default_target and default_target not in targets:
        raise ConfigurationError(f"restore.default_target '{default_target}' not found in restore.targets")

    on_failure = (_trim_opt(defaults.get("on_failure")) or "continue").lower()
    if on_failure not in ON_FAILURE_POLICIES:
        raise ConfigurationError(f"defaults.on_failure must be one of {', '.join(ON_FAILURE_POLICIES)}")
    try:
        orphan_hours = int(defaults.get("orphan_max_age_hours", 24))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"defaults.orphan_max_age_hours: {e}") from e

    log_cfg = defaults.get("log") or {}
    notifications = _section(raw, "notifications")

    return Config(
        repos=repos,
        default_repo=default_repo,
        ns=ns,
        backup_id=backup_id,
        keyfile=_resolve_path(base_dir, keyfile) if keyfile else None,
        pv_prefixes=tuple(p for p in (str(x).strip() for x in (pbs.get("pv_prefixes") or [])) if p),
        pv_exclude_re=_compile_regex(pbs.get("pv_exclude_re"), "pbs.pv_exclude_re"),
        zfs_pools=zfs_pools,
        lvm_vgs=lvm_vgs,
        restore_targets=targets,
        restore_rules=rules,
        default_target=default_target,
        pbc_binary=_trim_opt(defaults.get("pbc_binary")) or DEFAULT_PBC_BINARY,
        lock_path=_trim_opt(defaults.get("lock_path")) or DEFAULT_LOCK_PATH,
        orphan_max_age_hours=orphan_hours,
        on_failure=on_failure,
        log=LogConfig(
            level=(log_cfg.get("level") or "INFO").upper(),
            file=_trim_opt(log_cfg.get("file")),
            rotate_max_bytes=int(log_cfg.get("rotate_max_bytes", 10 * 1024 * 1024)),
            rotate_backups=int(log_cfg.get("rotate_backups", 5)),
        ),
        notify=NotifyConfig(
            healthcheck_url=(notifications.get("healthcheck_url") or "").strip(),
            discord_webhook=(notifications.get("discord_webhook") or "").strip(),
            discord_notify_on=tuple(notifications.get("discord_notify_on") or ()),
            discord_prefix=notifications.get("discord_prefix") or "",
        ),
    )

# =========================
# Logging
# =========================

def setup_logging(log_cfg: LogConfig):
    level = getattr(logging, log_cfg.level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    root.addHandler(ch)

    if log_cfg.file:
        path = Path(log_cfg.file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logging.error("Create dir %s failed: %s", path.parent, e)
        fh = logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=log_cfg.rotate_max_bytes,
            backupCount=log_cfg.rotate_backups,
        )
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        root.addHandler(fh)

# =========================
# Notifications
# =========================

def http_get(url: str, timeout=10):
    import urllib.request
    try:
        with urllib.request.urlopen(url, timeout=timeout) as r:
            return r.status, r.read()
    except OSError as e:
        logging.warning("HTTP GET failed for %s: %s", url, e)
        return None, None

def http_post_json(url: str, payload: dict, timeout=10):
    import urllib.request
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"}, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as r:
            return r.status, r.read()
    except OSError as e:
        logging.warning("HTTP POST failed for %s: %s", url, e)
        return None, None

def notify_healthchecks(notify: NotifyConfig, event: str):
    if not notify.healthcheck_url:
        return
    suffix = {"start": "/start", "success": "", "failure": "/fail"}.get(event, "")
    url = notify.healthcheck_url.rstrip("/") + suffix
    logging.info("Healthchecks ping: %s", url)
    http_get(url)

def notify_discord(notify: NotifyConfig, content: str, event: str = ""):
    if not notify.discord_webhook:
        return
    if notify.discord_notify_on and event and event not in notify.discord_notify_on:
        logging.debug("Discord skip event=%s not in %s", event, list(notify.discord_notify_on))
        return
    msg = f"{notify.discord_prefix} {content}".strip()
    status, _ = http_post_json(notify.discord_webhook, {"content": msg})
    if not status or status < 200 or status >= 300:
        logging.warning("Discord notify failed (status=%s).", status)

# =========================
# Volume filter
# =========================

def in_scope(volume_name: str, prefixes: Sequence[str], exclude_re: Optional[re.Pattern] = None) -> bool:
    """
    A volume is in scope iff (no prefixes OR it starts with one of them)
    AND (no exclude regex OR the regex matches nowhere in the name).
    """
    included = not prefixes or any(volume_name.startswith(p) for p in prefixes)
    excluded = exclude_re is not None and exclude_re.search(volume_name) is not None
    return included and not excluded

def filter_volumes(volumes: Iterable[Volume], prefixes: Sequence[str],
                   exclude_re: Optional[re.Pattern] = None) -> List[Volume]:
    """Keep in-scope volumes, in discovery order, with in_scope set."""
    out = []
    for v in volumes:
        if in_scope(v.leaf, prefixes, exclude_re):
            out.append(dataclasses.replace(v, in_scope=True))
        else:
            logging.debug("Volume %s (%s) excluded by pv_prefixes/pv_exclude_re", v.name, v.provider)
    return out

# =========================
# Archive naming
# =========================

ARCHIVE_SUFFIX = ".img"

def make_archive_name(provider: str, leaf: str, uid: str) -> str:
    """
    <provider>_<stem>_<ext>_<uid>.img, e.g. zfs_vm-9999-pv-test_raw_85a081ee.img.
    ext is empty when the leaf has no extension (or one parse_archive_name could not split back).
    """
    if provider not in PROVIDER_TYPES:
        raise ValueError(f"unknown provider type: {provider}")
    if not leaf or "/" in leaf:
        raise ValueError(f"invalid volume leaf: {leaf!r}")
    if not uid or "_" in uid:
        raise ValueError(f"invalid volume id: {uid!r}")
    stem, dot, ext = leaf.rpartition(".")
    if not dot or not ext or "_" in ext:
        stem, ext = leaf, ""
    return f"{provider}_{stem}_{ext}_{uid}{ARCHIVE_SUFFIX}"

def parse_archive_name(name: str) -> Tuple[str, str, str]:
    """Inverse of make_archive_name. Returns (provider, leaf, uid); accepts the .img.fidx form."""
    base = name
    if base.endswith(".fidx"):
        base = base[:-len(".fidx")]
    if base.endswith(ARCHIVE_SUFFIX):
        base = base[:-len(ARCHIVE_SUFFIX)]
    parts = base.split("_")
    if len(parts) < 4:
        raise ValueError(f"invalid archive name: {name}")
    provider = parts[0]
    if provider not in PROVIDER_TYPES:
        raise ValueError(f"unknown provider in archive name: {name}")
    uid = parts[-1]
    ext = parts[-2]
    stem = "_".join(parts[1:-2])
    leaf = f"{stem}.{ext}" if ext else stem
    if not leaf or not uid:
        raise ValueError(f"invalid archive name: {name}")
    return provider, leaf, uid

def archive_name_for(volume: Volume) -> str:
    return make_archive_name(volume.provider, volume.leaf, volume.uid)

def archive_from_name(name: str, *, size: int = 0, backup_id: str = "") -> Archive:
    provider, leaf, _uid = parse_archive_name(name)
    return Archive(name=name, provider=provider, leaf=leaf, size=size, backup_id=backup_id)

# =========================
# Restore routing
# =========================

def resolve_route(archive: Archive, rules: Sequence[RestoreRule],
                  targets: Mapping[str, RestoreTarget], default_target: Optional[str]) -> RestoreResolution:
    """
    Pick the restore target for one archive. Order matters, first match wins:
    1. first rule whose provider equals the archive's and whose regex (if any) matches its name
    2. first target (declaration order) of the archive's provider type
    3. default_target, whatever its type
    Raises NoRouteFound when none of them applies.
    """
    for rule in rules:
        if rule.matches(archive):
            return RestoreResolution(archive.name, rule.target, TIER_RULE)

    for name, target in targets.items():
        if target.type == archive.provider:
            return RestoreResolution(archive.name, name, TIER_SAME_TYPE)

    if default_target:
        return RestoreResolution(archive.name, default_target, TIER_GLOBAL)

    raise NoRouteFound(f"no restore target for {archive.name}: no matching rule, "
                       f"no {archive.provider} target and no default_target")

# =========================
# Storage providers
# =========================

SNAP_TAG_PREFIX = "pvbkp"
ZVOL_DEV_ROOT = "/dev/zvol"
_SNAP_TAG_RE = re.compile(SNAP_TAG_PREFIX + r"-(\d{8}-\d{6})$")

def build_snapshot_tag() -> str:
    ts = dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{SNAP_TAG_PREFIX}-{ts}"

def short_id(raw: str, *, decimal: bool = False) -> str:
    """First 8 hex digits of a ZFS guid (decimal) or LVM uuid (dashed, mixed case)."""
    if decimal:
        try:
            return format(int(raw), "x")[:8]
        except ValueError:
            return ""
    return "".join(c for c in raw.lower() if c in "0123456789abcdef")[:8]

class StorageProvider(Protocol):
    """What the orchestrators need from a storage backend; one implementation per provider type."""

    provider_type: str

    def list_volumes(self, source: str) -> List[Volume]: ...

    def create_snapshot(self, volume: Volume) -> Snapshot: ...

    def delete_snapshot(self, snapshot: Snapshot) -> None: ...

    def materialize_volume(self, target: RestoreTarget, archive: Archive, force: bool = False) -> VolumeHandle: ...

class ZfsProvider:
    """ZFS zvols: snapshot + read-only clone (volmode=dev) so the snapshot can be read as a block device."""

    provider_type = "zfs"

    def __init__(self, tag: Optional[str] = None):
        self.tag = tag or build_snapshot_tag()

    def _exists(self, name: str) -> bool:
        rc, _, err = sh(["zfs", "list", "-H", "-o", "name", "-t", "all", name], capture=True)
        if rc == 0:
            return True
        if "does not exist" in err:
            return False
        raise ProviderError(f"zfs list {name} failed: {err.strip()}")

    def list_volumes(self, source: str) -> List[Volume]:
        rc, out, err = sh(["zfs", "list", "-H", "-p", "-t", "volume", "-o", "name,origin,volsize,guid", "-r", source],
                          capture=True)
        if rc != 0:
            raise ProviderError(f"zfs list failed for pool {source}: {err.strip()}")
        vols = []
        for line in out.splitlines():
            if not line.strip():
                continue
            parts = [p.strip() for p in line.split("\t")]
            if len(parts) < 4:
                logging.debug("zfs list: unexpected row %r", line)
                continue
            name, origin, volsize, guid = parts[:4]
            if origin != "-":
                logging.debug("skip %s: clone of %s", name, origin)
                continue
            uid = short_id(guid, decimal=True)
            if not uid:
                logging.warning("skip %s: unreadable guid %r", name, guid)
                continue
            try:
                size = int(volsize)
            except ValueError:
                size = 0
            vols.append(Volume(name=name, provider="zfs", source=source,
                               leaf=name.rsplit("/", 1)[-1], size=size, uid=uid))
        if not vols:
            logging.debug("zfs: no volumes in pool %s", source)
        return vols

    def create_snapshot(self, volume: Volume) -> Snapshot:
        snap = f"{volume.name}@{self.tag}"
        clone = f"{volume.name}-{self.tag}"
        rc, _, err = sh(["zfs", "snapshot", snap], capture=True)
        if rc != 0:
            raise ProviderError(f"zfs snapshot {snap} failed: {err.strip()}")
        logging.info("Created snapshot %s", snap)

        snapshot = Snapshot(volume=volume, name=snap, device=Path(ZVOL_DEV_ROOT) / clone, clone=clone)
        try:
            rc, _, err = sh(["zfs", "clone", "-o", "readonly=on", "-o", "volmode=dev", snap, clone], capture=True)
            if rc != 0:
                raise ProviderError(f"zfs clone {snap} -> {clone} failed: {err.strip()}")
            wait_for_device(snapshot.device)
        except BaseException:
            # interrupts too: nobody else knows this snapshot exists yet
            self._rollback(snapshot)
            raise
        return snapshot

    def _rollback(self, snapshot: Snapshot):
        try:
            self.delete_snapshot(snapshot)
        except ProviderError as e:
            logging.warning("Rollback of %s failed: %s", snapshot.name, e)

    def delete_snapshot(self, snapshot: Snapshot) -> None:
        errors = []
        # clone depends on the snapshot: destroy it first
        for target in (snapshot.clone, snapshot.name):
            if not target or not self._exists(target):
                continue
            logging.info("Destroy %s", target)
            rc, _, err = sh(["zfs", "destroy", "-r", target], capture=True)
            if rc != 0:
                errors.append(f"zfs destroy -r {target}: {err.strip()}")
        if errors:
            raise ProviderError("; ".join(errors))

    def materialize_volume(self, target: RestoreTarget, archive: Archive, force: bool = False) -> VolumeHandle:
        leaf = archive.leaf or archive.name
        dataset = f"{target.root}/{leaf}"
        device = Path(ZVOL_DEV_ROOT) / dataset
        if self._exists(dataset):
            if not force:
                raise DestinationExists(f"zvol {dataset} already exists (use --force to overwrite)")
            logging.warning("Overwriting existing zvol %s", dataset)
            return VolumeHandle(target.name, dataset, device, created=False)

        if archive.size <= 0:
            raise ProviderError(f"unknown image size for {archive.name}, cannot create {dataset}")
        rc, _, err = sh(["zfs", "create", "-V", str(archive.size), dataset], capture=True)
        if rc != 0:
            raise ProviderError(f"zfs create -V {archive.size} {dataset} failed: {err.strip()}")
        logging.info("Created zvol %s (%d bytes)", dataset, archive.size)
        wait_for_device(device)
        return VolumeHandle(target.name, dataset, device, created=True)

class LvmThinProvider:
    """LVM thin volumes: thin snapshot, activated with -K so it shows up under /dev/<vg>/."""

    provider_type = "lvmthin"

    def __init__(self, tag: Optional[str] = None):
        self.tag = tag or build_snapshot_tag()

    def _exists(self, lv_fq: str) -> bool:
        rc, _, err = sh(["lvs", "--noheadings", "-o", "lv_name", lv_fq], capture=True)
        if rc == 0:
            return True
        if "Failed to find" in err or "not found" in err:
            return False
        raise ProviderError(f"lvs {lv_fq} failed: {err.strip()}")

    def list_volumes(self, source: str) -> List[Volume]:
        rc, out, err = sh(["lvs", "--reportformat", "json", "--units", "b", "--nosuffix",
                           "-o", "lv_name,vg_name,segtype,origin,lv_size,lv_uuid", source], capture=True)
        if rc != 0:
            raise ProviderError(f"lvs failed for vg {source}: {err.strip()}")
        try:
            report = json.loads(out or "{}").get("report") or []
        except (ValueError, AttributeError) as e:
            raise ProviderError(f"parse lvs json for vg {source}: {e}") from e

        vols = []
        for rep in report:
            for lv in rep.get("lv") or []:
                lv_name = lv.get("lv_name", "")
                vg_name = lv.get("vg_name", "")
                if lv.get("segtype") != "thin":
                    logging.debug("skip %s/%s: segtype != thin", vg_name, lv_name)
                    continue
                if vg_name != source:
                    logging.debug("skip %s/%s: vg not %s", vg_name, lv_name, source)
                    continue
                if lv.get("origin"):
                    logging.debug("skip %s/%s: snapshot of %s", vg_name, lv_name, lv["origin"])
                    continue
                uid = short_id(lv.get("lv_uuid", ""))
                if len(uid) != 8:
                    logging.warning("skip %s/%s: unreadable lv_uuid", vg_name, lv_name)
                    continue
                try:
                    size = int(float(lv.get("lv_size") or 0))
                except ValueError:
                    size = 0
                vols.append(Volume(name=f"{vg_name}/{lv_name}", provider="lvmthin", source=source,
                                   leaf=lv_name, size=size, uid=uid))
        if not vols:
            logging.debug("lvmthin: no thin volumes in vg %s", source)
        return vols

    def create_snapshot(self, volume: Volume) -> Snapshot:
        vg = volume.source
        snap_lv = f"{volume.leaf}-{self.tag}"
        snap_fq = f"{vg}/{snap_lv}"
        rc, _, err = sh(["lvcreate", "-s", "-n", snap_lv, volume.name], capture=True)
        if rc != 0:
            raise ProviderError(f"lvcreate -s -n {snap_lv} {volume.name} failed: {err.strip()}")
        logging.info("Created snapshot %s", snap_fq)

        snapshot = Snapshot(volume=volume, name=snap_fq, device=Path("/dev") / vg / snap_lv)
        try:
            rc, _, err = sh(["lvchange", "-K", "-ay", snap_fq], capture=True)
            if rc != 0:
                raise ProviderError(f"lvchange -K -ay {snap_fq} failed: {err.strip()}")
            wait_for_device(snapshot.device)
        except BaseException:
            # interrupts too: nobody else knows this snapshot exists yet
            try:
                self.delete_snapshot(snapshot)
            except ProviderError as e:
                logging.warning("Rollback of %s failed: %s", snap_fq, e)
            raise
        return snapshot

    def delete_snapshot(self, snapshot: Snapshot) -> None:
        if not self._exists(snapshot.name):
            logging.debug("Snapshot %s already gone", snapshot.name)
            return
        logging.info("Remove %s", snapshot.name)
        rc, _, err = sh(["lvremove", "-f", snapshot.name], capture=True)
        if rc != 0:
            raise ProviderError(f"lvremove -f {snapshot.name} failed: {err.strip()}")

    def materialize_volume(self, target: RestoreTarget, archive: Archive, force: bool = False) -> VolumeHandle:
        leaf = archive.leaf or archive.name
        lv_fq = f"{target.vg}/{leaf}"
        device = Path("/dev") / target.vg / leaf
        if self._exists(lv_fq):
            if not force:
                raise DestinationExists(f"LV {lv_fq} already exists (use --force to overwrite)")
            logging.warning("Overwriting existing LV %s", lv_fq)
            return VolumeHandle(target.name, lv_fq, device, created=False)

        if archive.size <= 0:
            raise ProviderError(f"unknown image size for {archive.name}, cannot create {lv_fq}")
        pool = f"{target.vg}/{target.thinpool}"
        rc, _, err = sh(["lvcreate", "-T", pool, "-n", leaf, "-V", f"{archive.size}B"], capture=True)
        if rc != 0:
            raise ProviderError(f"lvcreate -T {pool} -n {leaf} -V {archive.size}B failed: {err.strip()}")
        logging.info("Created thin LV %s (%d bytes) in %s", lv_fq, archive.size, pool)
        wait_for_device(device)
        return VolumeHandle(target.name, lv_fq, device, created=True)

def build_providers() -> Dict[str, StorageProvider]:
    """One provider per type; both are always available since restores may cross types."""
    tag = build_snapshot_tag()
    return {"zfs": ZfsProvider(tag), "lvmthin": LvmThinProvider(tag)}

# =========================
# Orphaned snapshot cleanup
# =========================

def _orphan_age_hours(name: str, now: dt.datetime) -> Optional[float]:
    """Age of a pvbkp-<YYYYMMDD-HHMMSS> snapshot/clone name, None if the name is not ours."""
    m = _SNAP_TAG_RE.search(name)
    if not m:
        return None
    try:
        created = dt.datetime.strptime(m.group(1), "%Y%m%d-%H%M%S")
    except ValueError:
        return None
    return (now - created).total_seconds() / 3600

def cleanup_orphaned_snapshots(config: Config, dry_run: bool = False) -> Tuple[int, int]:
    """
    Remove pvbkp snapshots/clones left behind by runs that died before their cleanup
    (kill -9, reboot, power loss). Only names older than orphan_max_age_hours are touched.

    Returns:
        Tuple of (total_found, total_deleted)
    """
    now = dt.datetime.now()
    max_age = config.orphan_max_age_hours
    stale: List[Tuple[str, List[str]]] = []

    for pool in config.zfs_pools:
        rc, out, err = sh(["zfs", "list", "-H", "-o", "name", "-t", "snapshot,volume", "-r", pool], capture=True)
        if rc != 0:
            logging.warning("Failed to list ZFS snapshots in %s for cleanup: %s", pool, err.strip())
            continue
        clones, snaps = [], []
        for name in (l.strip() for l in out.splitlines()):
            age = _orphan_age_hours(name, now)
            if age is None:
                continue
            if age < max_age:
                logging.debug("%s is recent (age: %.1f hours), keeping", name, age)
                continue
            (snaps if "@" in name else clones).append(name)
        # clones before the snapshots they were made from
        for name in clones + snaps:
            stale.append((name, ["zfs", "destroy", "-r", name]))

    for vg in config.lvm_vgs:
        rc, out, err = sh(["lvs", "--noheadings", "-o", "lv_name", vg], capture=True)
        if rc != 0:
            logging.warning("Failed to list LVs in %s for cleanup: %s", vg, err.strip())
            continue
        for lv in (l.strip() for l in out.splitlines()):
            age = _orphan_age_hours(lv, now)
            if age is None or age < max_age:
                continue
            stale.append((f"{vg}/{lv}", ["lvremove", "-f", f"{vg}/{lv}"]))

    total_deleted = 0
    for name, cmd in stale:
        if dry_run:
            logging.info("[DRY RUN] would delete orphaned snapshot %s", name)
            total_deleted += 1
            continue
        logging.info("Deleting orphaned snapshot %s", name)
        rc, _, err = sh(cmd, capture=True)
        if rc == 0:
            total_deleted += 1
        else:
            logging.warning("Failed to delete orphaned snapshot %s: %s", name, err.strip())

    if stale:
        logging.info("Orphaned snapshot cleanup%s: found %d, %s %d",
                     " [DRY RUN]" if dry_run else "", len(stale),
                     "would delete" if dry_run else "deleted", total_deleted)
    else:
        logging.debug("No orphaned %s snapshots found", SNAP_TAG_PREFIX)
    return len(stale), total_deleted

# =========================
# PBS archiver
# =========================

def format_epoch(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def parse_snapshot_selector(selector: str) -> int:
    """Epoch seconds or RFC 3339 ('2025-01-31T02:00:00Z'); naive times are taken as UTC."""
    s = selector.strip()
    if s.isdigit():
        return int(s)
    try:
        when = dt.datetime.fromisoformat(s[:-1] + "+00:00" if s.endswith("Z") else s)
    except ValueError as e:
        raise ConfigurationError(f"invalid snapshot selector '{selector}': expected 'latest', epoch or RFC 3339") from e
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return int(when.timestamp())

def group_snapshot_sets(rows: Sequence[dict], backup_id: str) -> List[SnapshotSetRef]:
    """
    Fold `proxmox-backup-client snapshots` rows into snapshot-sets: every host group
    '<backup_id>.<...>' snapshot sharing a backup-time belongs to the same run.
    Oldest first.
    """
    prefix = backup_id + "."
    by_time: Dict[int, List[Archive]] = {}
    for row in rows:
        bid = str(row.get("backup-id", ""))
        if row.get("backup-type", "host") != "host" or not bid.startswith(prefix):
            continue
        try:
            btime = int(row.get("backup-time"))
        except (TypeError, ValueError):
            continue
        for f in row.get("files") or []:
            fname = f.get("filename", "") if isinstance(f, dict) else str(f)
            if not fname.endswith(ARCHIVE_SUFFIX + ".fidx"):
                continue
            name = fname[:-len(".fidx")]
            size = int(f.get("size") or 0) if isinstance(f, dict) else 0
            try:
                archive = archive_from_name(name, size=size, backup_id=bid)
            except ValueError:
                logging.debug("skip %s in %s: not one of our archive names", fname, bid)
                continue
            by_time.setdefault(btime, []).append(archive)
    return [
        SnapshotSetRef(t, tuple(sorted(by_time[t], key=lambda a: a.name)))
        for t in sorted(by_time)
    ]

def select_snapshot_set(sets: Sequence[SnapshotSetRef], selector: str = "latest") -> SnapshotSetRef:
    if not sets:
        raise SnapshotSetNotFound("no snapshot-sets found in repository")
    if not selector or selector == "latest":
        return max(sets, key=lambda s: s.backup_time)
    ts = parse_snapshot_selector(selector)
    candidates = [s for s in sets if s.backup_time <= ts]
    if not candidates:
        raise SnapshotSetNotFound(f"no snapshot-set at or before {format_epoch(ts)}")
    return max(candidates, key=lambda s: s.backup_time)

class PbsArchiver:
    """
    proxmox-backup-client wrapper. Each volume goes to its own host group
    '<backup_id>.<archive stem>'; all of them share one --backup-time per run.
    """

    def __init__(self, repo: RepoConfig, *, backup_id: str, ns: Optional[str] = None,
                 keyfile: Optional[Path] = None, pbc_binary: str = DEFAULT_PBC_BINARY,
                 backup_time: Optional[int] = None):
        self.repo = repo
        self.backup_id = backup_id
        self.ns = ns
        self.keyfile = keyfile
        self.pbc_binary = pbc_binary
        self.backup_time = backup_time or int(time.time())
        self.env = repo.env()

    @classmethod
    def from_config(cls, config: Config, repo: RepoConfig) -> "PbsArchiver":
        return cls(repo, backup_id=config.backup_id, ns=config.ns, keyfile=config.keyfile,
                   pbc_binary=config.pbc_binary)

    def _opts(self) -> List[str]:
        args = []
        if self.ns:
            args.extend(["--ns", self.ns])
        if self.keyfile:
            args.extend(["--keyfile", str(self.keyfile)])
        return args

    def _log_env(self):
        logging.info("Env: PBS_REPOSITORY=%s PBS_PASSWORD=%s PBS_FINGERPRINT=%s",
                     self.env.get("PBS_REPOSITORY", ""), masked(self.env.get("PBS_PASSWORD")),
                     self.env.get("PBS_FINGERPRINT", ""))

    def group_id(self, archive_name: str) -> str:
        stem = archive_name[:-len(ARCHIVE_SUFFIX)] if archive_name.endswith(ARCHIVE_SUFFIX) else archive_name
        return f"{self.backup_id}.{sanitize_backup_id(stem)}"

    def namespace_exists(self) -> bool:
        rc, out, err = sh([self.pbc_binary, "namespace", "list"], capture=True, env=self.env)
        if rc != 0:
            raise ArchiverError(f"proxmox-backup-client namespace list failed: {err.strip()}")
        return any(tok == self.ns for line in out.splitlines() for tok in line.split())

    def ensure_namespace(self):
        if not self.ns:
            return
        if self.namespace_exists():
            logging.debug("Namespace '%s' exists on %s", self.ns, self.repo.alias)
            return
        logging.info("Namespace '%s' not found on %s, creating", self.ns, self.repo.alias)
        rc, _, err = sh([self.pbc_binary, "namespace", "create", self.ns], capture=True, env=self.env)
        if rc != 0:
            raise ArchiverError(f"proxmox-backup-client namespace create {self.ns} failed: {err.strip()}")

    def stream(self, archive_name: str, device: Path) -> Ack:
        bid = self.group_id(archive_name)
        cmd = [self.pbc_binary, "backup", f"{archive_name}:{device}",
               "--backup-type", "host", "--backup-id", bid,
               "--backup-time", str(self.backup_time)] + self._opts()
        self._log_env()
        logging.info("Executing: %s", shlex.join(cmd))
        rc = sh_with_logging(cmd, env=self.env)
        logging.info("proxmox-backup-client exit code: %s", rc)
        if rc != 0:
            raise ArchiverError(f"proxmox-backup-client backup of {archive_name} exited with {rc}")
        return Ack(archive_name, bid, self.backup_time)

    def list_snapshot_sets(self) -> List[SnapshotSetRef]:
        cmd = [self.pbc_binary, "snapshots", "--output-format", "json"]
        if self.ns:
            cmd.extend(["--ns", self.ns])
        rc, out, err = sh(cmd, capture=True, env=self.env)
        if rc != 0:
            raise ArchiverError(f"proxmox-backup-client snapshots failed: {err.strip()}")
        try:
            rows = json.loads(out or "[]")
        except ValueError as e:
            raise ArchiverError(f"parse PBS snapshots json: {e}") from e
        return group_snapshot_sets(rows, self.backup_id)

    def list_archives(self, snapshot_set: SnapshotSetRef) -> List[Archive]:
        return list(snapshot_set.archives)

    def fetch(self, snapshot_set: SnapshotSetRef, archive_name: str, device: Path):
        """Stream one archive of the snapshot-set onto a block device (pbc restore ... - | dd)."""
        archive = snapshot_set.find(archive_name)
        if archive is None:
            raise ArchiverError(f"archive {archive_name} not in snapshot-set {snapshot_set.label}")
        snap_path = f"host/{archive.backup_id}/{format_epoch(snapshot_set.backup_time)}"
        producer = [self.pbc_binary, "restore", snap_path, archive.name, "-"] + self._opts()
        consumer = ["dd", f"of={device}", "bs=4M", "conv=notrunc", "oflag=direct", "status=progress"]
        self._log_env()
        logging.info("Executing: %s | %s", shlex.join(producer), shlex.join(consumer))
        rc_pbc, rc_dd, err = sh_pipeline(producer, consumer, env=self.env)
        if rc_pbc != 0 or rc_dd != 0:
            raise ArchiverError(f"restore of {archive_name} to {device} failed "
                                f"(proxmox-backup-client rc={rc_pbc}, dd rc={rc_dd}): {err.strip()}")

def select_archives(available: Sequence[Archive], names: Optional[Sequence[str]] = None,
                    select_all: bool = False) -> List[Tuple[str, Optional[Archive]]]:
    """(name, archive) pairs in request order; archive is None when the name is not in the set."""
    if select_all:
        return [(a.name, a) for a in available]
    by_name = {a.name: a for a in available}
    out = []
    for n in _dedup(names):
        # accept what `restore list-archives` prints as well as the .fidx form PBS shows
        key = n[:-len(".fidx")] if n.endswith(".fidx") else n
        out.append((key, by_name.get(key)))
    return out

# =========================
# Snapshot lifecycle
# =========================

class SnapshotState(enum.Enum):
    ABSENT = "Absent"
    CREATED = "Created"
    STREAMING = "Streaming"
    COMMITTED = "Committed"
    FAILED = "Failed"
    CLEANED = "Cleaned"

STATUS_PLANNED = "planned"
STATUS_COMMITTED = "committed"
STATUS_RESTORED = "restored"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

@dataclasses.dataclass
class VolumeOutcome:
    volume: str
    provider: str
    archive: str
    status: str
    error: Optional[str] = None
    stage: Optional[str] = None          # snapshot | plan | stream | namespace
    cleanup_error: Optional[str] = None

class SnapshotLifecycle:
    """
    Drives one volume through snapshot -> stream -> cleanup.

    The snapshot is released in a finally block, so it is deleted on success,
    on a failed transfer and on KeyboardInterrupt alike. A failing delete is
    logged and recorded, it never replaces the error that led to it.
    """

    def __init__(self, provider: StorageProvider, archiver, volume: Volume, archive_name: str):
        self.provider = provider
        self.archiver = archiver
        self.volume = volume
        self.archive_name = archive_name
        self.snapshot: Optional[Snapshot] = None
        self.state = SnapshotState.ABSENT
        self.history: List[SnapshotState] = [self.state]

    def _move(self, state: SnapshotState):
        logging.debug("%s: %s -> %s", self.volume.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _outcome(self, status: str, **kw) -> VolumeOutcome:
        return VolumeOutcome(self.volume.name, self.volume.provider, self.archive_name, status, **kw)

    def _release(self) -> Optional[str]:
        try:
            self.provider.delete_snapshot(self.snapshot)
        except Exception as e:
            logging.warning("Cleanup of snapshot %s failed: %s", self.snapshot.name, e)
            return str(e) or e.__class__.__name__
        self._move(SnapshotState.CLEANED)
        return None

    def run(self) -> VolumeOutcome:
        try:
            self.snapshot = self.provider.create_snapshot(self.volume)
        except ProviderError as e:
            logging.error("Snapshot of %s failed, skipping volume: %s", self.volume.name, e)
            self._move(SnapshotState.FAILED)
            return self._outcome(STATUS_FAILED, error=str(e), stage="snapshot")
        self._move(SnapshotState.CREATED)

        error: Optional[Exception] = None
        cleanup_error = None
        try:
            self._move(SnapshotState.STREAMING)
            logging.info("Streaming %s -> %s", self.snapshot.device, self.archive_name)
            self.archiver.stream(self.archive_name, self.snapshot.device)
            self._move(SnapshotState.COMMITTED)
        except (ArchiverError, OSError) as e:
            error = e
            logging.error("Backup of %s failed: %s", self.volume.name, e)
            self._move(SnapshotState.FAILED)
        finally:
            if self.state == SnapshotState.STREAMING:
                # interrupted mid-transfer, the exception keeps propagating after cleanup
                self._move(SnapshotState.FAILED)
            cleanup_error = self._release()

        if error is not None:
            return self._outcome(STATUS_FAILED, error=str(error), stage="stream", cleanup_error=cleanup_error)
        if cleanup_error:
            logging.warning("%s committed but its snapshot %s was left behind", self.archive_name, self.snapshot.name)
        return self._outcome(STATUS_COMMITTED, cleanup_error=cleanup_error)

# =========================
# Reports
# =========================

@dataclasses.dataclass
class ArchiveOutcome:
    archive: str
    status: str
    target: Optional[str] = None
    tier: Optional[str] = None
    destination: Optional[str] = None
    error: Optional[str] = None

@dataclasses.dataclass
class RunReport:
    repo: str
    dry_run: bool = False
    outcomes: list = dataclasses.field(default_factory=list)

    @property
    def failures(self) -> list:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]

    @property
    def skipped(self) -> list:
        return [o for o in self.outcomes if o.status == STATUS_SKIPPED]

    def _run_errors(self) -> list:
        return []

    @property
    def status(self) -> str:
        if self.failures or self.skipped or self._run_errors():
            return "partial failure"
        return "success"

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.status == "success" else EXIT_FAILURE

@dataclasses.dataclass
class BackupReport(RunReport):
    backup_id: str = ""
    backup_time: Optional[int] = None
    discovery_errors: List[str] = dataclasses.field(default_factory=list)

    def _run_errors(self) -> list:
        return self.discovery_errors

@dataclasses.dataclass
class RestoreReport(RunReport):
    snapshot_time: Optional[int] = None

# =========================
# Backup orchestration
# =========================

def discover_volumes(config: Config, providers: Mapping[str, StorageProvider],
                     errors: Optional[List[str]] = None) -> List[Volume]:
    """ListVolumes over every configured source, in config order. Failing sources are logged and recorded."""
    volumes: List[Volume] = []
    for provider_type, source in config.sources():
        try:
            found = providers[provider_type].list_volumes(source)
        except ProviderError as e:
            logging.error("Discovery failed for %s source %s: %s", provider_type, source, e)
            if errors is not None:
                errors.append(f"{provider_type}:{source}: {e}")
            continue
        logging.info("Discovered %d %s volume(s) in %s", len(found), provider_type, source)
        volumes.extend(found)
    return volumes

def plan_backup(volumes: Sequence[Volume]) -> List[Tuple[Volume, str, Optional[str]]]:
    """
    Archive name per in-scope volume, in processing order.
    Returns (volume, archive_name, error); a name already taken earlier in the run is an error.
    """
    plan = []
    taken: Dict[str, str] = {}
    for v in volumes:
        try:
            name = archive_name_for(v)
        except ValueError as e:
            plan.append((v, "", str(e)))
            continue
        if name in taken:
            plan.append((v, name, f"archive name {name} already used by {taken[name]}"))
            continue
        taken[name] = v.name
        plan.append((v, name, None))
    return plan

def print_backup_plan(repo_alias: str, ns: Optional[str], backup_id: str,
                      plan: Sequence[Tuple[Volume, str, Optional[str]]], dry_run: bool):
    ns_disp = ns if ns else "(root)"
    pfx = "[DRY RUN] " if dry_run else ""
    logging.info("%s=== BACKUP PLAN | repo-alias: %s | ns: %s | bid: %s ===", pfx, repo_alias, ns_disp, backup_id)
    if not plan:
        logging.info("%s  (no volumes in scope)", pfx)
    for v, name, err in plan:
        note = f"  # {err}" if err else ""
        logging.info("%s  - %s:%s (%s, %d bytes) -> %s%s", pfx, v.provider, v.name, v.uid, v.size, name or "?", note)

def run_backup(config: Config, target: Optional[str] = None, dry_run: bool = False, *,
               providers: Optional[Mapping[str, StorageProvider]] = None, archiver=None) -> BackupReport:
    """
    Discover, filter and back up every in-scope volume to one repository.

    Raises UnknownRepository before touching anything; every other failure is per volume
    and ends up in the report.
    """
    repo = config.resolve_repository(target)
    if providers is None:
        providers = build_providers()
    if archiver is None:
        archiver = PbsArchiver.from_config(config, repo)

    report = BackupReport(repo=repo.alias, dry_run=dry_run, backup_id=config.backup_id,
                          backup_time=getattr(archiver, "backup_time", None))

    volumes = discover_volumes(config, providers, report.discovery_errors)
    in_scope_volumes = filter_volumes(volumes, config.pv_prefixes, config.pv_exclude_re)
    logging.info("%d of %d volume(s) in scope", len(in_scope_volumes), len(volumes))
    plan = plan_backup(in_scope_volumes)
    print_backup_plan(repo.alias, config.ns, config.backup_id, plan, dry_run)

    if dry_run:
        for v, name, err in plan:
            if err:
                report.outcomes.append(VolumeOutcome(v.name, v.provider, name, STATUS_FAILED, error=err, stage="plan"))
            else:
                report.outcomes.append(VolumeOutcome(v.name, v.provider, name, STATUS_PLANNED))
        return report

    ns_error = None
    if plan:
        try:
            archiver.ensure_namespace()
        except ArchiverError as e:
            logging.error("Namespace check failed, no volume can be backed up: %s", e)
            ns_error = str(e)

    aborted = False
    for v, name, err in plan:
        if aborted:
            outcome = VolumeOutcome(v.name, v.provider, name, STATUS_SKIPPED, error="run aborted after earlier failure")
        elif err:
            logging.error("Skipping %s: %s", v.name, err)
            outcome = VolumeOutcome(v.name, v.provider, name, STATUS_FAILED, error=err, stage="plan")
        elif ns_error:
            outcome = VolumeOutcome(v.name, v.provider, name, STATUS_FAILED, error=ns_error, stage="namespace")
        else:
            logging.info("")
            logging.info("=== %s:%s ===", v.provider, v.name)
            outcome = SnapshotLifecycle(providers[v.provider], archiver, v, name).run()
        report.outcomes.append(outcome)
        if outcome.status == STATUS_FAILED and config.on_failure == "abort" and not aborted:
            logging.error("on_failure=abort: skipping the remaining volumes")
            aborted = True
    return report

def print_backup_summary(report: BackupReport):
    pfx = "[DRY RUN] " if report.dry_run else ""
    logging.info("")
    logging.info("%s=== BACKUP SUMMARY | repo-alias: %s | bid: %s | backup-time: %s ===", pfx, report.repo,
                 report.backup_id, format_epoch(report.backup_time) if report.backup_time else "-")
    for o in report.outcomes:
        extra = f" ({o.stage}: {o.error})" if o.error else ""
        if o.cleanup_error:
            extra += f" [snapshot cleanup failed: {o.cleanup_error}]"
        logging.info("%s  %-9s %s:%s -> %s%s", pfx, o.status.upper(), o.provider, o.volume, o.archive, extra)
    for err in report.discovery_errors:
        logging.info("%s  DISCOVERY FAILED %s", pfx, err)
    committed = sum(1 for o in report.outcomes if o.status == STATUS_COMMITTED)
    logging.info("%sResult: %s (%d committed, %d failed, %d skipped)", pfx, report.status,
                 committed, len(report.failures), len(report.skipped))

# =========================
# Restore orchestration
# =========================

def destination_name(target: RestoreTarget, archive: Archive) -> str:
    leaf = archive.leaf or archive.name
    if target.type == "zfs":
        return f"{target.root}/{leaf}"
    return f"{target.vg}/{leaf}"

def print_restore_plan(report: RestoreReport):
    pfx = "[DRY RUN] " if report.dry_run else ""
    logging.info("%s=== RESTORE PLAN | repo-alias: %s | snapshot: %s ===", pfx, report.repo,
                 format_epoch(report.snapshot_time) if report.snapshot_time is not None else "-")
    for o in report.outcomes:
        if o.error:
            logging.info("%s  - %s -> (unresolved)  # %s", pfx, o.archive, o.error)
        else:
            logging.info("%s  - %s -> %s [%s] %s", pfx, o.archive, o.target, o.tier, o.destination)

def run_restore(config: Config, source: Optional[str] = None, snapshot: str = "latest",
                archives: Optional[Sequence[str]] = None, select_all: bool = False,
                dry_run: bool = False, force: bool = False, *,
                providers: Optional[Mapping[str, StorageProvider]] = None, archiver=None) -> RestoreReport:
    """
    Restore archives of one snapshot-set onto the volumes picked by resolve_route.

    Raises ConfigurationError / SnapshotSetNotFound / ArchiverError for problems that stop
    the whole run; per-archive problems (no route, destination taken, transfer failure) are
    recorded in the report.
    """
    if not select_all and not archives:
        raise ConfigurationError("nothing selected: pass --all or --archive NAME")
    repo = config.resolve_repository(source)
    if providers is None:
        providers = build_providers()
    if archiver is None:
        archiver = PbsArchiver.from_config(config, repo)

    snap_set = select_snapshot_set(archiver.list_snapshot_sets(), snapshot)
    logging.info("Using snapshot-set %s (%d archive(s))", snap_set.label, len(snap_set.archives))
    report = RestoreReport(repo=repo.alias, dry_run=dry_run, snapshot_time=snap_set.backup_time)

    # plan: resolve every selected archive before anything is written
    planned: List[Tuple[ArchiveOutcome, Optional[Archive]]] = []
    claimed: Dict[str, str] = {}
    for name, archive in select_archives(archiver.list_archives(snap_set), archives, select_all):
        if archive is None:
            planned.append((ArchiveOutcome(name, STATUS_FAILED,
                                           error=f"archive not found in snapshot-set {snap_set.label}"), None))
            continue
        try:
            res = resolve_route(archive, config.restore_rules, config.restore_targets, config.default_target)
        except NoRouteFound as e:
            planned.append((ArchiveOutcome(name, STATUS_FAILED, error=str(e)), None))
            continue
        target = config.restore_targets[res.target]
        dest = destination_name(target, archive)
        outcome = ArchiveOutcome(name, STATUS_PLANNED, target=res.target, tier=res.tier, destination=dest)
        if dest in claimed:
            outcome.status = STATUS_FAILED
            outcome.error = str(DestinationExists(f"{dest} is already the destination of {claimed[dest]}"))
            planned.append((outcome, None))
            continue
        claimed[dest] = name
        planned.append((outcome, archive))

    report.outcomes = [o for o, _ in planned]
    print_restore_plan(report)
    if dry_run:
        return report

    aborted = False
    for outcome, archive in planned:
        if archive is None:
            pass
        elif aborted:
            outcome.status = STATUS_SKIPPED
            outcome.error = "run aborted after earlier failure"
        else:
            target = config.restore_targets[outcome.target]
            logging.info("")
            logging.info("=== restore %s -> %s (%s) ===", archive.name, outcome.destination, target.describe())
            handle = None
            try:
                handle = providers[target.type].materialize_volume(target, archive, force)
                archiver.fetch(snap_set, archive.name, handle.device)
                outcome.status = STATUS_RESTORED
                logging.info("Restored %s to %s", archive.name, handle.device)
            except (DestinationExists, ProviderError, ArchiverError, OSError) as e:
                outcome.status = STATUS_FAILED
                outcome.error = str(e)
                if handle is not None and handle.created:
                    outcome.error += (f"; {handle.name} was created by this run and is left partially written,"
                                      " rerun with --force to overwrite it")
                logging.error("Restore of %s failed: %s", archive.name, outcome.error)
        if outcome.status == STATUS_FAILED and config.on_failure == "abort" and not aborted:
            logging.error("on_failure=abort: skipping the remaining archives")
            aborted = True
    return report

def print_restore_summary(report: RestoreReport):
    pfx = "[DRY RUN] " if report.dry_run else ""
    logging.info("")
    logging.info("%s=== RESTORE SUMMARY | repo-alias: %s | snapshot: %s ===", pfx, report.repo,
                 format_epoch(report.snapshot_time) if report.snapshot_time is not None else "-")
    for o in report.outcomes:
        where = f"{o.target} [{o.tier}] {o.destination}" if o.target else "-"
        extra = f" ({o.error})" if o.error else ""
        logging.info("%s  %-9s %s -> %s%s", pfx, o.status.upper(), o.archive, where, extra)
    restored = sum(1 for o in report.outcomes if o.status == STATUS_RESTORED)
    logging.info("%sResult: %s (%d restored, %d failed, %d skipped)", pfx, report.status,
                 restored, len(report.failures), len(report.skipped))

# =========================
# Commands
# =========================

def _raise_interrupt(signum, _frame):
    raise KeyboardInterrupt(f"signal {signum}")

def cmd_backup_run(cfg: Config, args) -> int:
    # bad --target must fail before the lock, orphan cleanup or notifications
    cfg.resolve_repository(args.target)
    acquire_single_instance_lock(cfg.lock_path)
    host = socket.gethostname()

    # Clean up orphaned snapshots from previous failed runs
    cleanup_orphaned_snapshots(cfg, dry_run=args.dry_run)

    if not args.dry_run:
        notify_healthchecks(cfg.notify, "start")
        notify_discord(cfg.notify, f"Backup run started on {host}", event="start")

    report = None
    try:
        report = run_backup(cfg, target=args.target, dry_run=args.dry_run)
        print_backup_summary(report)
    finally:
        if not args.dry_run:
            if report is not None and report.exit_code == EXIT_OK:
                notify_healthchecks(cfg.notify, "success")
                notify_discord(cfg.notify, f"✅ Backup SUCCESS on {host} ({len(report.outcomes)} volume(s))",
                               event="success")
            else:
                notify_healthchecks(cfg.notify, "failure")
                failed = len(report.failures) if report is not None else "?"
                notify_discord(cfg.notify, f"❌ Backup FAILED on {host} ({failed} failed) - see logs for details",
                               event="failure")
            notify_discord(cfg.notify, f"Backup run finished on {host}", event="finish")
    return report.exit_code

def cmd_backup_list_archives(cfg: Config, args) -> int:
    cfg.resolve_repository(args.target)
    errors: List[str] = []
    volumes = filter_volumes(discover_volumes(cfg, build_providers(), errors), cfg.pv_prefixes, cfg.pv_exclude_re)
    if not volumes:
        logging.info("nothing to backup")
    rc = EXIT_FAILURE if errors else EXIT_OK
    for v, name, err in plan_backup(volumes):
        if err:
            logging.error("%s: %s", v.name, err)
            rc = EXIT_FAILURE
            continue
        print(f"{name}\t{v.provider}:{v.name}\t{v.size}")
    return rc

def _archiver_for(cfg: Config, alias: Optional[str]) -> PbsArchiver:
    return PbsArchiver.from_config(cfg, cfg.resolve_repository(alias))

def cmd_restore_list_snapshots(cfg: Config, args) -> int:
    sets = _archiver_for(cfg, args.source).list_snapshot_sets()
    if not sets:
        logging.info("no snapshot-sets for backup-id %s", cfg.backup_id)
    for s in sets:
        print(f"{s.label}\t{s.backup_time}\t{len(s.archives)} archive(s)")
    return EXIT_OK

def cmd_restore_list_archives(cfg: Config, args) -> int:
    archiver = _archiver_for(cfg, args.source)
    snap_set = select_snapshot_set(archiver.list_snapshot_sets(), args.snapshot)
    for a in archiver.list_archives(snap_set):
        print(f"{a.name}\t{a.provider}\t{a.leaf}\t{a.size}")
    return EXIT_OK

def cmd_restore_run(cfg: Config, args) -> int:
    acquire_single_instance_lock(cfg.lock_path)
    report = run_restore(cfg, source=args.source, snapshot=args.snapshot, archives=args.archive,
                         select_all=args.all, dry_run=args.dry_run, force=args.force)
    print_restore_summary(report)
    return report.exit_code

def cmd_config_show(cfg: Config, args) -> int:
    print(yaml.safe_dump(cfg.redacted(), sort_keys=False), end="")
    return EXIT_OK

# =========================
# Main
# =========================

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pbs-pv-runner",
                                 description="pbs-pv-runner: back up & restore ZFS/LVM-thin volumes with proxmox-backup-client")
    ap.add_argument("-c", "--config", required=True, help="Path to YAML config")
    ap.add_argument("--pbc-binary", default=None, help="Override path/name of proxmox-backup-client")
    sub = ap.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Back up volumes").add_subparsers(dest="action", required=True)
    p = backup.add_parser("run", help="Snapshot and stream every in-scope volume")
    p.add_argument("--target", default=None, help="Repository alias (default: pbs.default_repo)")
    p.add_argument("--dry-run", action="store_true", help="Print plan & archive names without executing")
    p.set_defaults(func=cmd_backup_run)
    p = backup.add_parser("list-archives", help="Show the archive names a backup run would produce")
    p.add_argument("--target", default=None, help="Repository alias (default: pbs.default_repo)")
    p.set_defaults(func=cmd_backup_list_archives)

    restore = sub.add_parser("restore", help="Restore volumes").add_subparsers(dest="action", required=True)
    p = restore.add_parser("list-snapshots", help="List snapshot-sets in the repository")
    p.add_argument("--source", default=None, help="Repository alias (default: pbs.default_repo)")
    p.set_defaults(func=cmd_restore_list_snapshots)
    p = restore.add_parser("list-archives", help="List archives of one snapshot-set")
    p.add_argument("--source", default=None, help="Repository alias (default: pbs.default_repo)")
    p.add_argument("--snapshot", required=True, help="'latest', epoch or RFC 3339 time")
    p.set_defaults(func=cmd_restore_list_archives)
    p = restore.add_parser("run", help="Restore archives onto local volumes")
    p.add_argument("--source", default=None, help="Repository alias (default: pbs.default_repo)")
    p.add_argument("--snapshot", required=True, help="'latest', epoch or RFC 3339 time")
    sel = p.add_mutually_exclusive_group(required=True)
    sel.add_argument("--all", action="store_true", help="Restore every archive of the snapshot-set")
    sel.add_argument("--archive", action="append", metavar="NAME", help="Archive to restore (repeatable)")
    p.add_argument("--force", action="store_true", help="Overwrite destination volumes that already exist")
    p.add_argument("--dry-run", action="store_true", help="Print resolved routes without executing")
    p.set_defaults(func=cmd_restore_run)

    cfg = sub.add_parser("config", help="Configuration helpers").add_subparsers(dest="action", required=True)
    p = cfg.add_parser("show", help="Print the effective configuration (secrets redacted)")
    p.set_defaults(func=cmd_config_show)
    return ap

def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    try:
        cfg = load_config(Path(args.config))
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG
    if args.pbc_binary:
        cfg = dataclasses.replace(cfg, pbc_binary=args.pbc_binary)

    setup_logging(cfg.log)
    # SIGTERM takes the same path as Ctrl-C so snapshots still get released
    signal.signal(signal.SIGTERM, _raise_interrupt)

    try:
        return args.func(cfg, args)
    except ConfigurationError as e:
        logging.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except PvRunnerError as e:
        logging.error("%s: %s", e.__class__.__name__, e)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logging.error("Interrupted, exiting.")
        return EXIT_INTERRUPTED

if __name__ == "__main__":
    sys.exit(main())
