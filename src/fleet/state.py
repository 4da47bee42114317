"""Per host deployment state, persisted so a crashed run can be resumed.

Active records live in `.fleet/deployments/active/<host>.json`, terminal
ones are moved to `.fleet/deployments/archive/`.

"""
import json
import os
import pathlib
import tempfile
import threading
import time
import uuid
from typing import Dict, List, Optional

from fleet import ConcurrentDeploymentError

PLANNED = "Planned"
BUILDING = "Building"
TRANSFERRING = "Transferring"
ACTIVATING = "Activating"
AWAITING_CONFIRMATION = "AwaitingConfirmation"
COMMITTED = "Committed"
ROLLED_BACK = "RolledBack"
FAILED = "Failed"

TERMINAL = (COMMITTED, ROLLED_BACK, FAILED)
# States in which the host may run a generation that is not committed.
ACTIVATED = (ACTIVATING, AWAITING_CONFIRMATION)

TRANSITIONS = {
    # Rollbacks to an existing generation skip building and transfer.
    PLANNED: (BUILDING, ACTIVATING, FAILED),
    BUILDING: (TRANSFERRING, FAILED),
    TRANSFERRING: (ACTIVATING, FAILED),
    ACTIVATING: (AWAITING_CONFIRMATION, ROLLED_BACK),
    AWAITING_CONFIRMATION: (COMMITTED, ROLLED_BACK),
}


class InvalidTransition(RuntimeError):
    pass


def new_run_id():
    return "{}-{}".format(
        time.strftime("%Y%m%dT%H%M%S"), uuid.uuid4().hex[:8])


class DeploymentState(object):

    def __init__(self, run_id, host, state=PLANNED, history=None,
                 reason=None, previous_generation=None, generation=None,
                 image=None, created_at=None):
        self.run_id = run_id
        self.host = host
        self.state = state
        self.created_at = created_at or time.time()
        self.history: List[dict] = (
            list(history) if history is not None
            else [{"state": state, "at": self.created_at}])
        self.reason = reason
        self.previous_generation = previous_generation
        self.generation = generation
        self.image = image

    def __repr__(self):
        return "<DeploymentState {} {} {}>".format(
            self.host, self.run_id, self.state)

    @property
    def terminal(self):
        return self.state in TERMINAL

    @property
    def updated_at(self):
        return self.history[-1]["at"]

    def transition(self, state, reason=None):
        if state not in TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(
                "{}: invalid transition {} -> {}".format(
                    self.host, self.state, state))
        self.state = state
        if reason is not None:
            self.reason = reason
        entry = {"state": state, "at": time.time()}
        if reason is not None:
            entry["reason"] = reason
        self.history.append(entry)

    def to_dict(self):
        return {
            "run_id": self.run_id,
            "host": self.host,
            "state": self.state,
            "created_at": self.created_at,
            "history": self.history,
            "reason": self.reason,
            "previous_generation": self.previous_generation,
            "generation": self.generation,
            "image": self.image,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            data["run_id"],
            data["host"],
            data["state"],
            history=data["history"],
            reason=data.get("reason"),
            previous_generation=data.get("previous_generation"),
            generation=data.get("generation"),
            image=data.get("image"),
            created_at=data.get("created_at"))


class StateJournal(object):
    """Keeps at most one non-terminal deployment per host."""

    def __init__(self, base_dir="."):
        self.root = pathlib.Path(base_dir) / ".fleet" / "deployments"
        self.active_dir = self.root / "active"
        self.archive_dir = self.root / "archive"
        self._lock = threading.Lock()

    def _path(self, hostname):
        return self.active_dir / "{}.json".format(hostname)

    def _write(self, path, state):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=str(path.parent), prefix=".{}.".format(path.name))
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, str(path))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _read(self, path) -> Optional[DeploymentState]:
        if not path.exists():
            return None
        with open(path, "r") as f:
            return DeploymentState.from_dict(json.load(f))

    def get(self, hostname) -> Optional[DeploymentState]:
        with self._lock:
            return self._read(self._path(hostname))

    def begin(self, run_id, hostname) -> DeploymentState:
        with self._lock:
            existing = self._read(self._path(hostname))
            if existing is not None and not existing.terminal:
                raise ConcurrentDeploymentError.from_context(
                    hostname, existing.run_id, existing.state)
            state = DeploymentState(run_id, hostname)
            self._write(self._path(hostname), state)
            return state

    def save(self, state: DeploymentState):
        with self._lock:
            path = self._path(state.host)
            self._write(path, state)
            if state.terminal:
                self._write(
                    self.archive_dir / "{}-{}.json".format(
                        state.host, state.run_id),
                    state)
                path.unlink()

    def active(self) -> Dict[str, DeploymentState]:
        with self._lock:
            if not self.active_dir.exists():
                return {}
            result = {}
            for path in sorted(self.active_dir.glob("*.json")):
                state = self._read(path)
                result[state.host] = state
            return result

    def history(self, hostname) -> List[DeploymentState]:
        with self._lock:
            if not self.archive_dir.exists():
                return []
            states = [
                self._read(path)
                for path in self.archive_dir.glob("{}-*.json".format(hostname))]
        states = [s for s in states if s.host == hostname]
        return sorted(states, key=lambda s: s.created_at)
