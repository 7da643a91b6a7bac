#!/usr/bin/env python3
"""
broker-auth - rekey

Rotate the broker auth keys (iv + token) installed in gears across the node fleet.
Runs from an admin workstation: reads the datastore inventory, discovers live nodes
and token-holding gears over SSH, then installs fresh key material in parallel.

Exit codes:
  0   = every requested gear rekeyed and no node discrepancy
  N   = number of individual failures (capped at 254)
  255 = runtime/config error
"""

from __future__ import annotations

import argparse
import base64
import concurrent.futures
import dataclasses
import datetime
import functools
import hashlib
import json
import os
import shlex
import subprocess
import sys
import textwrap
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

DEFAULT_TIMEOUT = 20
DEFAULT_MAX_PARALLEL = 16
DEFAULT_GEAR_BASE_DIR = "/var/lib/openshift"

# Exit status is a single byte; 255 is kept for runtime/config errors.
MAX_FAILURE_STATUS = 254
RUNTIME_ERROR_STATUS = 255

RC_TIMEOUT = 124
RC_NOT_STARTED = 125
RC_INTERRUPTED = 130
RC_TRANSPORT_ERROR = 255

# -------------------------
# Utilities
# -------------------------


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def run(
    cmd: List[str], *, check: bool = False, capture: bool = True, timeout: int = 30
) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd,
        check=check,
        capture_output=capture,
        text=True,
        timeout=timeout,
    )


def shell_escape(s: str) -> str:
    return shlex.quote(s)


def b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise RuntimeError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-pyyaml)."
        ) from ex

    p = Path(path).expanduser()
    if not p.exists():
        raise RuntimeError(f"File not found: {p}")
    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise RuntimeError(f"{p}: root must be a mapping/dict")
    return data


def cfg_get(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def require(cfg: Dict[str, Any], path: str) -> Any:
    v = cfg_get(cfg, path, None)
    if v is None:
        raise RuntimeError(f"Missing required config key: {path}")
    return v


def resolve_path(path: str, base_dir: Optional[Path]) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute() and base_dir is not None:
        p = base_dir / p
    return p


def read_local_bytes(path: Path, label: str) -> bytes:
    if not path.exists():
        raise RuntimeError(f"Missing {label}: {path}")
    return path.read_bytes()


def describe_error(ex: BaseException) -> str:
    return f"{type(ex).__name__}: {ex}"


def normalize_hostname(s: str) -> str:
    return s.strip().lower()


def positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {value!r}")
    return n


def parse_uuid_list(values: Iterable[str]) -> List[str]:
    # "--rekey a,b --rekey c" -> [a, b, c], first occurrence wins
    out: List[str] = []
    for v in values:
        for part in v.split(","):
            u = part.strip()
            if u and u not in out:
                out.append(u)
    return out


# -------------------------
# Reporting
# -------------------------


@dataclasses.dataclass
class Finding:
    target: str
    severity: str  # "INFO" | "WARN" | "FAIL"
    action: str
    details: str


class Reporter:
    def __init__(self) -> None:
        self.items: List[Finding] = []

    def info(self, target: str, action: str, details: str) -> None:
        self.items.append(Finding(target, "INFO", action, details))

    def warn(self, target: str, action: str, details: str) -> None:
        self.items.append(Finding(target, "WARN", action, details))

    def fail(self, target: str, action: str, details: str) -> None:
        self.items.append(Finding(target, "FAIL", action, details))

    def summarize(self) -> Tuple[int, int, int]:
        i = sum(1 for x in self.items if x.severity == "INFO")
        w = sum(1 for x in self.items if x.severity == "WARN")
        f = sum(1 for x in self.items if x.severity == "FAIL")
        return i, w, f

    def failures(self) -> int:
        return self.summarize()[2]

    def exit_status(self) -> int:
        return min(self.failures(), MAX_FAILURE_STATUS)

    def print(self, *, quiet: bool = False) -> None:
        by_target: Dict[str, List[Finding]] = {}
        for x in self.items:
            if quiet and x.severity == "INFO":
                continue
            by_target.setdefault(x.target, []).append(x)

        sev_order = {"FAIL": 0, "WARN": 1, "INFO": 2}
        for tgt in sorted(by_target.keys()):
            print(f"\n== {tgt} ==")
            for it in sorted(
                by_target[tgt], key=lambda z: (sev_order.get(z.severity, 9), z.action)
            ):
                prefix = {"INFO": "[..] ", "WARN": "[!!] ", "FAIL": "[XX] "}.get(
                    it.severity, "[?] "
                )
                print(f"{prefix}{it.action}: {it.details}")


# -------------------------
# SSH runner
# -------------------------


@dataclasses.dataclass
class SSH:
    user: str
    port: int
    timeout: int
    proxy_jump: Optional[str]

    def cmd_base(self) -> List[str]:
        cmd = [
            "ssh",
            "-p",
            str(self.port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self.timeout}",
        ]
        if self.proxy_jump:
            cmd += ["-J", self.proxy_jump]
        return cmd

    def run(
        self, host: str, remote_cmd: str, *, sudo: bool = False, timeout: int = 60
    ) -> Tuple[int, str, str]:
        if sudo:
            remote_cmd = f"sudo -n bash -lc {shell_escape(remote_cmd)}"
        else:
            remote_cmd = f"bash -lc {shell_escape(remote_cmd)}"
        full = self.cmd_base() + [f"{self.user}@{host}", remote_cmd]

        try:
            cp = run(full, check=False, capture=True, timeout=timeout)
            return cp.returncode, (cp.stdout or "").strip(), (cp.stderr or "").strip()
        except subprocess.TimeoutExpired:
            return RC_TIMEOUT, "", "timeout"


# -------------------------
# Parallel fan-out
# -------------------------


@dataclasses.dataclass
class FanOut:
    results: Dict[Any, Any]
    errors: Dict[Any, BaseException]
    pending: Set[Any]
    unstarted: Set[Any] = dataclasses.field(default_factory=set)
    interrupted: bool = False


def fan_out(
    calls: Dict[Any, Callable[[], Any]], *, timeout: int, max_workers: int
) -> FanOut:
    """Run every call concurrently, giving each ``timeout`` seconds from its start.

    Calls queued behind busy workers keep waiting for a worker; the clock only
    runs once a call starts. The whole fan-out is still capped at one
    ``timeout`` per wave of ``max_workers`` calls.

    Calls still running past their deadline end up in ``pending``. Calls that
    never got a worker (operator interrupt, or workers held past the cap) end
    up in ``unstarted``. Everything that already finished is kept.
    """
    out = FanOut(results={}, errors={}, pending=set())
    if not calls:
        return out

    workers = max(1, min(max_workers, len(calls)))
    waves = -(-len(calls) // workers)
    hard_deadline = time.monotonic() + timeout * waves
    started: Dict[Any, float] = {}

    def timed(key: Any, fn: Callable[[], Any]) -> Any:
        started[key] = time.monotonic()
        return fn()

    pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
    futures = {pool.submit(timed, key, fn): key for key, fn in calls.items()}
    not_done = set(futures)
    try:
        while not_done:
            now = time.monotonic()
            if now >= hard_deadline:
                break
            queued = [f for f in not_done if futures[f] not in started]
            expiries = [
                started[futures[f]] + timeout for f in not_done if futures[f] in started
            ]
            if not queued and all(e <= now for e in expiries):
                break
            next_check = min([e for e in expiries if e > now] + [hard_deadline])
            _, not_done = concurrent.futures.wait(
                not_done,
                timeout=next_check - now,
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
    except KeyboardInterrupt:
        out.interrupted = True
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    for fut, key in futures.items():
        if not fut.done() or fut.cancelled():
            if key in started:
                out.pending.add(key)
            else:
                out.unstarted.add(key)
            continue
        exc = fut.exception()
        if exc is not None:
            out.errors[key] = exc
        else:
            out.results[key] = fut.result()
    return out


# -------------------------
# Datastore inventory
# -------------------------


@dataclasses.dataclass(frozen=True)
class Gear:
    uuid: str
    app_uuid: str
    server_identity: str


@dataclasses.dataclass
class Application:
    uuid: str
    name: str
    domain: str = ""
    owner: str = ""
    created_at: str = ""
    gears: List[Gear] = dataclasses.field(default_factory=list)


def _as_text(v: Any) -> str:
    # yaml.safe_load turns ISO timestamps into datetime objects
    if isinstance(v, (datetime.datetime, datetime.date)):
        return v.isoformat()
    return "" if v is None else str(v)


def parse_applications(entries: Any, source: str) -> List[Application]:
    if not isinstance(entries, list):
        raise RuntimeError(f"{source}: applications must be a list")

    apps: List[Application] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("uuid"):
            raise RuntimeError(f"{source}: invalid application entry: {entry!r}")
        app_uuid = str(entry["uuid"]).strip()
        app = Application(
            uuid=app_uuid,
            name=str(entry.get("name") or app_uuid),
            domain=_as_text(entry.get("domain")),
            owner=_as_text(entry.get("owner")),
            created_at=_as_text(entry.get("created_at")),
        )
        for g in entry.get("gears", []) or []:
            if not isinstance(g, dict) or not g.get("uuid"):
                raise RuntimeError(f"{source}: invalid gear entry: {g!r}")
            if not g.get("server_identity"):
                raise RuntimeError(
                    f"{source}: gear {g['uuid']} in {app.name} has no server_identity"
                )
            app.gears.append(
                Gear(
                    uuid=str(g["uuid"]).strip(),
                    app_uuid=app_uuid,
                    server_identity=normalize_hostname(str(g["server_identity"])),
                )
            )
        apps.append(app)
    return apps


class Inventory:
    """Datastore view of applications, their gears and the nodes hosting them."""

    def __init__(self, applications: List[Application]) -> None:
        self.applications = applications
        self._by_gear: Dict[str, Tuple[Application, Gear]] = {}
        for app in applications:
            for gear in app.gears:
                self._by_gear[gear.uuid] = (app, gear)

    @classmethod
    def from_config(
        cls, cfg: Dict[str, Any], base_dir: Optional[Path] = None
    ) -> "Inventory":
        inline = cfg_get(cfg, "inventory.applications", None)
        if inline is not None:
            return cls(parse_applications(inline, "inventory.applications"))

        path = resolve_path(str(require(cfg, "inventory.path")), base_dir)
        data = load_yaml(str(path))
        return cls(parse_applications(data.get("applications", []), str(path)))

    def list_distinct_host_nodes(self) -> Set[str]:
        return {gear.server_identity for _, gear in self._by_gear.values()}

    def resolve_gear(self, uuid: str) -> Optional[Tuple[Application, Gear]]:
        return self._by_gear.get(uuid)


# -------------------------
# Fleet discovery
# -------------------------


@dataclasses.dataclass(frozen=True)
class GearInfo:
    uuid: str
    server_identity: str


@dataclasses.dataclass
class Discovery:
    gears: Dict[str, GearInfo]
    live_nodes: Set[str]
    unreachable: Dict[str, str]
    # never contacted: no worker was free before the discovery cap
    not_contacted: Set[str] = dataclasses.field(default_factory=set)
    interrupted: bool = False


def discovery_command(gear_base_dir: str) -> str:
    return f"""
set -euo pipefail
base={shell_escape(gear_base_dir)}
[[ -d "$base" ]] || exit 0
for d in "$base"/*/; do
  if [[ -f "${{d}}.auth/iv" && -f "${{d}}.auth/token" ]]; then
    basename "$d"
  fi
done
"""


def discover_gears_with_tokens(
    ssh: SSH,
    nodes: Iterable[str],
    gear_base_dir: str,
    timeout: int,
    *,
    max_workers: int = DEFAULT_MAX_PARALLEL,
) -> Discovery:
    cmd = discovery_command(gear_base_dir)
    calls = {
        node: functools.partial(ssh.run, node, cmd, sudo=True, timeout=timeout)
        for node in sorted(set(nodes))
    }
    fan = fan_out(calls, timeout=timeout, max_workers=max_workers)

    disc = Discovery(
        gears={}, live_nodes=set(), unreachable={}, interrupted=fan.interrupted
    )
    for node in calls:
        if node in fan.errors:
            disc.unreachable[node] = describe_error(fan.errors[node])
            continue
        if node in fan.pending:
            disc.unreachable[node] = "interrupted" if fan.interrupted else "timeout"
            continue
        if node in fan.unstarted:
            disc.not_contacted.add(node)
            continue
        rc, out, err = fan.results[node]
        if rc != 0:
            disc.unreachable[node] = f"rc={rc} {err or out or 'no output'}".strip()
            continue
        disc.live_nodes.add(node)
        for line in out.splitlines():
            uuid = line.strip()
            if uuid:
                disc.gears[uuid] = GearInfo(uuid=uuid, server_identity=node)
    return disc


# -------------------------
# Reconciliation
# -------------------------


def find_discrepancies(
    known_nodes: Iterable[str],
    live_nodes: Iterable[str],
    seen_nodes: Iterable[str] = (),
    unchecked_nodes: Iterable[str] = (),
) -> Set[str]:
    """Nodes the datastore knows about that were neither cleared nor seen live.

    Only gears on live nodes can be processed, so the result is always
    ``known - live``; nodes outside the datastore are never flagged. Nodes
    discovery never got to contact are left out: they did not fail to answer.
    """
    snapshot = frozenset(known_nodes)
    return set(
        snapshot
        - frozenset(seen_nodes)
        - frozenset(live_nodes)
        - frozenset(unchecked_nodes)
    )


def report_discrepancies(missing: Iterable[str], rep: Reporter) -> None:
    for node in sorted(missing):
        rep.fail(
            node,
            "discrepancy",
            "datastore lists gears on this node but it did not answer discovery; "
            "gears there cannot be rekeyed (node offline or renamed?)",
        )


# -------------------------
# Broker keys
# -------------------------


class BrokerKey:
    """Broker auth key material: AES-256-CBC token, RSA-encrypted IV."""

    def __init__(
        self,
        salt: bytes,
        public_key_pem: bytes,
        private_key_pem: Optional[bytes] = None,
        passphrase: Optional[bytes] = None,
    ) -> None:
        if not salt:
            raise RuntimeError("broker auth salt is empty")
        self.key = hashlib.sha512(salt).digest()[:32]
        self.public_key = serialization.load_pem_public_key(public_key_pem)
        self.private_key = (
            serialization.load_pem_private_key(private_key_pem, password=passphrase)
            if private_key_pem
            else None
        )

    @classmethod
    def from_config(
        cls, cfg: Dict[str, Any], base_dir: Optional[Path] = None
    ) -> "BrokerKey":
        salt = cfg_get(cfg, "broker.auth_salt", None)
        if salt is not None:
            salt_bytes = str(salt).encode("utf-8")
        else:
            salt_file = str(require(cfg, "broker.auth_salt_file"))
            salt_path = resolve_path(salt_file, base_dir)
            salt_bytes = read_local_bytes(salt_path, "broker auth salt").strip()

        pub_path = resolve_path(str(require(cfg, "broker.auth_pub_key")), base_dir)
        pub = read_local_bytes(pub_path, "broker auth public key")

        priv = None
        priv_cfg = cfg_get(cfg, "broker.auth_priv_key", None)
        if priv_cfg:
            priv_path = resolve_path(str(priv_cfg), base_dir)
            if priv_path.exists():
                priv = priv_path.read_bytes()

        passphrase = cfg_get(cfg, "broker.auth_priv_key_pass", None)
        return cls(
            salt_bytes,
            pub,
            priv,
            passphrase.encode("utf-8") if passphrase else None,
        )

    def generate_broker_key(self, app: Application) -> Tuple[str, str]:
        iv = os.urandom(16)
        payload = json.dumps(
            {"app_id": app.uuid, "creation_time": app.created_at}
        ).encode("utf-8")

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(payload) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self.key), modes.CBC(iv)).encryptor()
        token = encryptor.update(padded) + encryptor.finalize()

        encrypted_iv = self.public_key.encrypt(iv, asym_padding.PKCS1v15())
        return (
            base64.b64encode(encrypted_iv).decode("ascii"),
            base64.b64encode(token).decode("ascii"),
        )

    def validate_broker_key(self, iv: str, token: str) -> Dict[str, Any]:
        if self.private_key is None:
            raise RuntimeError("broker auth private key is required to validate tokens")
        raw_iv = self.private_key.decrypt(base64.b64decode(iv), asym_padding.PKCS1v15())
        decryptor = Cipher(algorithms.AES(self.key), modes.CBC(raw_iv)).decryptor()
        padded = decryptor.update(base64.b64decode(token)) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return json.loads(unpadder.update(padded) + unpadder.finalize())


# -------------------------
# Rekey jobs
# -------------------------


@dataclasses.dataclass(frozen=True)
class RekeyJob:
    gear_uuid: str
    app_uuid: str
    server_identity: str
    iv: str
    token: str


@dataclasses.dataclass(frozen=True)
class RekeyResult:
    gear_uuid: str
    server_identity: str
    exit_code: int
    stdout: str
    stderr: str


class JobBatch:
    """Rekey jobs keyed by target node: accumulating -> dispatched -> drained."""

    def __init__(self) -> None:
        self.jobs: Dict[str, List[RekeyJob]] = {}
        self.state = "accumulating"

    def add(self, job: RekeyJob) -> None:
        if self.state != "accumulating":
            raise RuntimeError(
                f"cannot add job for gear {job.gear_uuid}: batch already {self.state}"
            )
        self.jobs.setdefault(job.server_identity, []).append(job)

    def seal(self) -> None:
        if self.state != "accumulating":
            raise RuntimeError(f"batch already {self.state}")
        self.state = "dispatched"

    def nodes(self) -> List[str]:
        return sorted(self.jobs.keys())

    def __iter__(self):
        for node in self.nodes():
            yield from self.jobs[node]

    def __len__(self) -> int:
        return sum(len(v) for v in self.jobs.values())


def rekey_command(job: RekeyJob, gear_base_dir: str) -> str:
    home = f"{gear_base_dir.rstrip('/')}/{job.gear_uuid}"
    return f"""
set -euo pipefail
home={shell_escape(home)}
if [[ ! -d "$home" ]]; then
  echo "gear home missing: $home" >&2
  exit 3
fi
grp="$(stat -c %g "$home")"
install -d -m 0750 -o root -g "$grp" "$home/.auth"
tmp="$(mktemp)"
trap 'rm -f "$tmp"' EXIT
echo {shell_escape(b64(job.iv))} | base64 -d > "$tmp"
install -m 0440 -o root -g "$grp" "$tmp" "$home/.auth/iv"
echo {shell_escape(b64(job.token))} | base64 -d > "$tmp"
install -m 0440 -o root -g "$grp" "$tmp" "$home/.auth/token"
echo "rekeyed"
"""


def make_ssh_runner(
    ssh: SSH, gear_base_dir: str, timeout: int
) -> Callable[[RekeyJob], Tuple[int, str, str]]:
    def runner(job: RekeyJob) -> Tuple[int, str, str]:
        return ssh.run(
            job.server_identity,
            rekey_command(job, gear_base_dir),
            sudo=True,
            timeout=timeout,
        )

    return runner


def execute_parallel(
    batch: JobBatch,
    runner: Callable[[RekeyJob], Tuple[int, str, str]],
    *,
    timeout: int,
    max_workers: int = DEFAULT_MAX_PARALLEL,
) -> Dict[str, List[RekeyResult]]:
    batch.seal()
    jobs = list(batch)
    calls = {i: functools.partial(runner, job) for i, job in enumerate(jobs)}
    fan = fan_out(calls, timeout=timeout, max_workers=max_workers)

    results: Dict[str, List[RekeyResult]] = {}
    for i, job in enumerate(jobs):
        if i in fan.results:
            rc, out, err = fan.results[i]
        elif i in fan.errors:
            rc, out, err = RC_TRANSPORT_ERROR, "", describe_error(fan.errors[i])
        elif fan.interrupted:
            rc, out, err = RC_INTERRUPTED, "", "interrupted"
        elif i in fan.unstarted:
            rc, out, err = RC_NOT_STARTED, "", "not started: all workers busy"
        else:
            rc, out, err = RC_TIMEOUT, "", "timeout"
        results.setdefault(job.server_identity, []).append(
            RekeyResult(job.gear_uuid, job.server_identity, rc, out, err)
        )
    batch.state = "drained"
    return results


# -------------------------
# Per-gear processing
# -------------------------

PLANNED = "planned"
QUEUED = "queued"
REKEYED = "rekeyed"
RESOLUTION_ERROR = "resolution-error"
REACHABILITY_ERROR = "reachability-error"
GENERATION_ERROR = "generation-error"
DISPATCH_ERROR = "dispatch-error"

FAILURE_STATUSES = frozenset(
    [RESOLUTION_ERROR, REACHABILITY_ERROR, GENERATION_ERROR, DISPATCH_ERROR]
)


@dataclasses.dataclass
class GearOutcome:
    gear_uuid: str
    status: str
    server_identity: Optional[str] = None
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status in FAILURE_STATUSES


def process_gears(
    uuids: Iterable[str],
    inventory: Inventory,
    live_nodes: Set[str],
    issuer: Optional[BrokerKey],
    *,
    dry_run: bool = False,
) -> Tuple[List[GearOutcome], JobBatch, Set[str]]:
    """Resolve, check and queue a rekey job for each gear.

    Returns one outcome per requested UUID, the (unsealed) job batch and the
    set of nodes cleared by successfully processed gears.
    """
    batch = JobBatch()
    outcomes: List[GearOutcome] = []
    seen: Set[str] = set()

    for uuid in uuids:
        resolved = inventory.resolve_gear(uuid)
        if resolved is None:
            outcomes.append(
                GearOutcome(uuid, RESOLUTION_ERROR, detail="not found in datastore")
            )
            continue
        app, gear = resolved
        node = gear.server_identity

        if node not in live_nodes:
            outcomes.append(
                GearOutcome(
                    uuid,
                    REACHABILITY_ERROR,
                    node,
                    f"node {node} did not answer discovery; it may be offline or "
                    "renamed (check the gear's server_identity in the datastore)",
                )
            )
            continue

        if dry_run:
            outcomes.append(
                GearOutcome(uuid, PLANNED, node, f"would rekey (app {app.name})")
            )
            seen.add(node)
            continue

        try:
            if issuer is None:
                raise RuntimeError("no broker key issuer configured")
            iv, token = issuer.generate_broker_key(app)
            batch.add(
                RekeyJob(
                    gear_uuid=uuid,
                    app_uuid=app.uuid,
                    server_identity=node,
                    iv=iv,
                    token=token,
                )
            )
        except Exception as ex:
            eprint(f"ERROR: gear {uuid}: key generation failed: {ex}")
            outcomes.append(GearOutcome(uuid, GENERATION_ERROR, node, str(ex)))
            continue

        outcomes.append(GearOutcome(uuid, QUEUED, node, f"application {app.name}"))
        seen.add(node)

    return outcomes, batch, seen


def apply_results(
    outcomes: List[GearOutcome],
    results: Dict[str, List[RekeyResult]],
    *,
    verbose: bool = False,
) -> None:
    queued: Dict[str, List[GearOutcome]] = {}
    for o in outcomes:
        if o.status == QUEUED:
            queued.setdefault(o.gear_uuid, []).append(o)

    for node_results in results.values():
        for r in node_results:
            pending = queued.get(r.gear_uuid) or []
            if not pending:
                continue
            o = pending.pop(0)
            if r.exit_code == 0:
                o.status = REKEYED
                o.detail = "rekeyed"
            else:
                o.status = DISPATCH_ERROR
                o.detail = f"rc={r.exit_code} {r.stderr or r.stdout or ''}".strip()
            if verbose and (r.stdout or r.stderr):
                o.detail += f" [stdout: {r.stdout!r} stderr: {r.stderr!r}]"


def report_outcomes(outcomes: List[GearOutcome], rep: Reporter) -> None:
    for o in outcomes:
        target = o.server_identity or "datastore"
        action = f"gear {o.gear_uuid}"
        if o.failed:
            rep.fail(target, action, f"{o.status}: {o.detail}")
        elif o.status == QUEUED:
            # never dispatched, e.g. the batch was never executed
            rep.fail(target, action, "queued but no result was collected")
        else:
            rep.info(target, action, f"{o.status}: {o.detail}")


# -------------------------
# Modes
# -------------------------


def report_found_gears(
    discovery: Discovery, inventory: Inventory, rep: Reporter
) -> None:
    for uuid in sorted(discovery.gears):
        info = discovery.gears[uuid]
        resolved = inventory.resolve_gear(uuid)
        if resolved is None:
            rep.warn(
                info.server_identity,
                f"gear {uuid}",
                "holds a broker auth token but is not in the datastore",
            )
            continue
        app, gear = resolved
        details = f"application {app.name}"
        if gear.server_identity != info.server_identity:
            rep.warn(
                info.server_identity,
                f"gear {uuid}",
                f"{details}; datastore records it on {gear.server_identity}",
            )
            continue
        rep.info(info.server_identity, f"gear {uuid}", details)


def rekey(
    uuids: List[str],
    inventory: Inventory,
    discovery: Discovery,
    issuer: Optional[BrokerKey],
    runner: Callable[[RekeyJob], Tuple[int, str, str]],
    rep: Reporter,
    *,
    timeout: int,
    max_workers: int = DEFAULT_MAX_PARALLEL,
    dry_run: bool = False,
    verbose: bool = False,
) -> List[GearOutcome]:
    outcomes, batch, seen = process_gears(
        uuids, inventory, discovery.live_nodes, issuer, dry_run=dry_run
    )

    if len(batch):
        print(
            f"Dispatching {len(batch)} rekey job(s) "
            f"across {len(batch.nodes())} node(s)..."
        )
        results = execute_parallel(
            batch, runner, timeout=timeout, max_workers=max_workers
        )
        apply_results(outcomes, results, verbose=verbose)
        if any(r.exit_code == RC_INTERRUPTED for rs in results.values() for r in rs):
            rep.warn("controller", "interrupt", "dispatch interrupted; partial results")

    report_outcomes(outcomes, rep)
    missing = find_discrepancies(
        inventory.list_distinct_host_nodes(),
        discovery.live_nodes,
        seen,
        discovery.not_contacted,
    )
    report_discrepancies(missing, rep)
    return outcomes


# -------------------------
# Main
# -------------------------


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="broker-auth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Find and rekey broker auth keys installed in gears.",
        epilog=textwrap.dedent("""\
        Examples:
          ./script/broker_auth.py --config config/broker-auth.yml --find-gears
          ./script/broker_auth.py --config config/broker-auth.yml --rekey 5d1c,8a2f
          ./script/broker_auth.py --config config/broker-auth.yml --rekey-all --dry-run
          ./script/broker_auth.py --config config/broker-auth.yml --rekey-all --quiet
        """),
    )
    ap.add_argument("--config", required=True, help="Path to broker-auth config YAML")
    mode = ap.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--find-gears",
        action="store_true",
        help="List gears holding broker auth keys and check node consistency",
    )
    mode.add_argument(
        "--rekey",
        action="append",
        metavar="UUID[,UUID...]",
        help="Rekey the given gear(s); may be repeated",
    )
    mode.add_argument(
        "--rekey-all",
        action="store_true",
        help="Rekey every gear found holding a broker auth key",
    )
    ap.add_argument(
        "--timeout",
        type=positive_int,
        default=None,
        help=f"Seconds to wait for node responses (default {DEFAULT_TIMEOUT})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not change anything; report what would be rekeyed",
    )
    ap.add_argument("--verbose", action="store_true", help="Show job stdout/stderr")
    ap.add_argument("--quiet", action="store_true", help="Only show WARN/FAIL findings")
    args = ap.parse_args(argv)

    try:
        cfg = load_yaml(args.config)
        base_dir = Path(args.config).expanduser().resolve().parent

        timeout = args.timeout or positive_int(
            str(cfg_get(cfg, "fleet.timeout_seconds", DEFAULT_TIMEOUT))
        )
        max_parallel = positive_int(
            str(cfg_get(cfg, "fleet.max_parallel", DEFAULT_MAX_PARALLEL))
        )
        gear_base_dir = str(cfg_get(cfg, "fleet.gear_base_dir", DEFAULT_GEAR_BASE_DIR))

        ssh = SSH(
            user=cfg_get(cfg, "fleet.ssh.default_user", "ops"),
            port=int(cfg_get(cfg, "fleet.ssh.port", 22)),
            timeout=int(cfg_get(cfg, "fleet.ssh.connect_timeout_seconds", 8)),
            proxy_jump=cfg_get(cfg, "fleet.ssh.proxy_jump", None),
        )

        inventory = Inventory.from_config(cfg, base_dir)
        issuer = None
        if not (args.find_gears or args.dry_run):
            issuer = BrokerKey.from_config(cfg, base_dir)

        extra_nodes = cfg_get(cfg, "fleet.nodes", []) or []
        if not isinstance(extra_nodes, list):
            raise RuntimeError("config fleet.nodes must be a list")
    except argparse.ArgumentTypeError as ex:
        eprint(f"ERROR: invalid config value: {ex}")
        return RUNTIME_ERROR_STATUS
    except Exception as ex:
        eprint(f"ERROR: {ex}")
        return RUNTIME_ERROR_STATUS

    rep = Reporter()
    candidates = inventory.list_distinct_host_nodes() | {
        normalize_hostname(str(n)) for n in extra_nodes
    }

    print(
        f"Discovering gears with broker auth keys on {len(candidates)} node(s) "
        f"(timeout {timeout}s)..."
    )
    discovery = discover_gears_with_tokens(
        ssh, candidates, gear_base_dir, timeout, max_workers=max_parallel
    )
    for node, reason in sorted(discovery.unreachable.items()):
        rep.warn(node, "discovery", f"no response: {reason}")
    for node in sorted(discovery.not_contacted):
        rep.warn(node, "discovery", "not contacted: no worker free before the deadline")

    if discovery.interrupted:
        rep.fail("controller", "interrupt", "discovery interrupted; nothing rekeyed")
    elif args.find_gears:
        report_found_gears(discovery, inventory, rep)
        report_discrepancies(
            find_discrepancies(
                inventory.list_distinct_host_nodes(),
                discovery.live_nodes,
                unchecked_nodes=discovery.not_contacted,
            ),
            rep,
        )
        print(f"Found {len(discovery.gears)} gear(s) with broker auth keys.")
    else:
        if args.rekey_all:
            uuids = sorted(discovery.gears)
        else:
            uuids = parse_uuid_list(args.rekey)

        outcomes = rekey(
            uuids,
            inventory,
            discovery,
            issuer,
            make_ssh_runner(ssh, gear_base_dir, timeout),
            rep,
            timeout=timeout,
            max_workers=max_parallel,
            dry_run=args.dry_run,
            verbose=args.verbose,
        )
        done = sum(1 for o in outcomes if o.status in (REKEYED, PLANNED))
        verb = "Would rekey" if args.dry_run else "Rekeyed"
        print(f"{verb} {done} of {len(outcomes)} gear(s).")

    rep.print(quiet=args.quiet)
    i, w, f = rep.summarize()
    print(f"\nSummary: INFO={i} WARN={w} FAIL={f}")
    return rep.exit_status()


if __name__ == "__main__":
    sys.exit(main())
