import datetime
import hashlib
import json
import os
import os.path
import shutil
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional

from fleet import GenerationFailure, output
from fleet.utils import CmdExecutionError, cmd

from .store import GenerationRecord, StoredSecret

MISSING = "no generation record"
GENERATOR_CHANGED = "generator changed"
GENERATION_DATA_CHANGED = "generation data changed"
OWNERS_ADDED = "owners added"
OWNERS_REMOVED = "owners removed"
PARTS_CHANGED = "part list changed"
RECIPIENTS_MISMATCH = "recipients do not match owners"
EXPIRED = "expired"
INPUTS_CHANGED = "generation inputs changed"

# Files a generator may write next to its parts.
METADATA_FILES = ("marker", "created_at", "expires_at")


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value):
    result = datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if result.tzinfo is None:
        result = result.replace(tzinfo=datetime.timezone.utc)
    return result


def generation_inputs(definition) -> dict:
    inputs = {
        "generator": definition.generator,
        "generation_data": definition.generation_data,
        "private_parts": sorted(definition.private_parts),
        "public_parts": sorted(definition.public_parts),
        "regenerate_on_owner_added": definition.regenerate_on_owner_added,
    }
    # Owners only count as an input when adding one should regenerate.
    if definition.regenerate_on_owner_added:
        inputs["owners"] = sorted(definition.owners)
    return inputs


def generation_hash(inputs) -> str:
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def generation_record(definition) -> GenerationRecord:
    inputs = generation_inputs(definition)
    return GenerationRecord(generation_hash(inputs), inputs)


def is_expired(stored: StoredSecret, at=None) -> bool:
    if not stored.expires_at:
        return False
    return parse_timestamp(stored.expires_at) <= (at or utcnow())


def needs_regeneration(definition, stored: Optional[StoredSecret],
                       at=None) -> List[str]:
    """Return why a managed secret has to be generated again.

    All applicable reasons are returned, an empty list means the stored
    plaintext is still what the generator would be asked to produce.

    """
    if stored is None or stored.generation is None:
        return [MISSING]
    reasons = []
    recorded = stored.generation.inputs
    inputs = generation_inputs(definition)
    if recorded.get("generator") != inputs["generator"]:
        reasons.append(GENERATOR_CHANGED)
    if recorded.get("generation_data") != inputs["generation_data"]:
        reasons.append(GENERATION_DATA_CHANGED)
    if (definition.owners - stored.owners
            and definition.regenerate_on_owner_added):
        reasons.append(OWNERS_ADDED)
    if stored.owners - definition.owners:
        reasons.append(OWNERS_REMOVED)
    if stored.layout != definition.expected_parts:
        reasons.append(PARTS_CHANGED)
    elif any(part.encrypted and part.holders != stored.owners
             for part in stored.parts.values()):
        reasons.append(RECIPIENTS_MISMATCH)
    if is_expired(stored, at):
        reasons.append(EXPIRED)
    if not reasons and stored.generation.hash != generation_hash(inputs):
        reasons.append(INPUTS_CHANGED)
    return reasons


class GeneratedSecret(object):
    """Plaintext straight from a generator. Never persisted."""

    def __init__(self, parts: Dict[str, bytes], created_at,
                 expires_at=None):
        self.parts = parts
        self.created_at = created_at
        self.expires_at = expires_at


def _read(path) -> Optional[bytes]:
    if not os.path.exists(path):
        return None
    with open(path, "rb") as f:
        return f.read()


def run_generator(definition, project_dir) -> GeneratedSecret:
    """Run a generator command and collect what it wrote to `$out`.

    The generator writes one file per part and signals success by writing
    `SUCCESS` to `$out/marker`. It may add `created_at` and `expires_at`
    (ISO 8601) files.

    """
    label = definition.label
    out = tempfile.mkdtemp(prefix="fleet-generate-")
    try:
        env = {
            "out": out,
            "FLEET_PROJECT": project_dir,
            "FLEET_SECRET": definition.name,
        }
        if definition.host:
            env["FLEET_HOST"] = definition.host
        if definition.generation_data is not None:
            env["FLEET_GENERATION_DATA"] = json.dumps(
                definition.generation_data, sort_keys=True)
        try:
            cmd(definition.generator, env=env, cwd=project_dir,
                encoding=None)
        except CmdExecutionError as e:
            raise GenerationFailure.from_context(
                label,
                "generator exited with code {}".format(e.returncode),
                e.stderr.decode("utf-8", errors="replace").strip())

        marker = _read(os.path.join(out, "marker"))
        if marker is None or marker.strip() != b"SUCCESS":
            raise GenerationFailure.from_context(
                label, "generator did not write the SUCCESS marker")

        produced = set(os.listdir(out)) - set(METADATA_FILES)
        expected = set(definition.expected_parts)
        if produced != expected:
            raise GenerationFailure.from_context(
                label, "generator produced parts [{}], expected [{}]".format(
                    ", ".join(sorted(produced)), ", ".join(sorted(expected))))
        parts = {name: _read(os.path.join(out, name)) for name in expected}

        created_at = _read(os.path.join(out, "created_at"))
        expires_at = _read(os.path.join(out, "expires_at"))
        try:
            created_at = (
                parse_timestamp(created_at.decode("ascii"))
                if created_at else utcnow())
            expires_at = (
                parse_timestamp(expires_at.decode("ascii"))
                if expires_at else None)
        except ValueError as e:
            raise GenerationFailure.from_context(
                label, "invalid timestamp: {}".format(e))
        return GeneratedSecret(
            parts,
            created_at.isoformat(),
            expires_at.isoformat() if expires_at else None)
    finally:
        shutil.rmtree(out, ignore_errors=True)


class GeneratorEngine(object):
    """Run generators with at most one run per secret at a time.

    Requests for a secret whose generator is already running get the
    running generation's future instead of starting another one.

    """

    def __init__(self, project_dir, jobs=4, runner=run_generator):
        self.project_dir = project_dir
        self.runner = runner
        self.pool = ThreadPoolExecutor(jobs, thread_name_prefix="generate")
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def request(self, definition) -> Future:
        with self._lock:
            future = self._inflight.get(definition.key)
            if future is not None:
                output.annotate(
                    "{}: joining running generation".format(definition.label),
                    debug=True)
                return future
            future = self.pool.submit(self._run, definition)
            self._inflight[definition.key] = future
        return future

    def _run(self, definition):
        try:
            output.step(definition.label, "Generating ...")
            return self.runner(definition, self.project_dir)
        finally:
            with self._lock:
                self._inflight.pop(definition.key, None)

    def generate(self, definition) -> GeneratedSecret:
        return self.request(definition).result()

    def shutdown(self):
        self.pool.shutdown(wait=True)
