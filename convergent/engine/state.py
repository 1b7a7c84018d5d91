"""
Deployment state.

Records, per address, what the engine needs to find a resource again: its
provider id, its recorded dependencies (for orphan teardown order) and, for
actions, the handle of the succeeded run. Property and output values are never
stored, so sensitive material cannot leak to disk.
"""
import json
import logging
import os
import random
import string
import tempfile
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from convergent.errors import StateError

logger = logging.getLogger(__name__)

STATE_VERSION = 1
SUFFIX_LENGTH = 6


@dataclass
class ResourceRecord:
    address: str
    resource_type: str
    kind: str
    resource_id: Optional[str] = None
    handle: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)


def generate_suffix(length: int = SUFFIX_LENGTH) -> str:
    rng = random.SystemRandom()
    alphabet = string.ascii_lowercase + string.digits
    # Cloud names usually have to start with a letter
    return rng.choice(string.ascii_lowercase) + "".join(rng.choice(alphabet) for _ in range(length - 1))


class StateStore:
    """JSON-file backed state; ``path=None`` keeps everything in memory."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.serial = 0
        self.suffix: Optional[str] = None
        self.records: Dict[str, ResourceRecord] = {}
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}") from exc

        if data.get("version") != STATE_VERSION:
            raise StateError(f"{self.path}: unsupported state version {data.get('version')!r}")
        self.serial = data.get("serial", 0)
        self.suffix = data.get("suffix")
        try:
            self.records = {
                address: ResourceRecord(address=address, **rec)
                for address, rec in data.get("resources", {}).items()
            }
        except TypeError as exc:
            raise StateError(f"{self.path}: malformed resource record: {exc}") from exc
        logger.debug("loaded state %s (serial %d, %d record(s))", self.path, self.serial, len(self.records))

    def save(self) -> None:
        self.serial += 1
        if not self.path:
            return
        data = {
            "version": STATE_VERSION,
            "serial": self.serial,
            "suffix": self.suffix,
            "resources": {
                address: {k: v for k, v in asdict(rec).items() if k != "address"}
                for address, rec in sorted(self.records.items())
            },
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(prefix=".state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(data, fh, indent=2)
                fh.write("\n")
            os.replace(tmp, self.path)
        except OSError as exc:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StateError(f"cannot write state file {self.path}: {exc}") from exc

    # ------------------------------------------------------------ accessors
    def ensure_suffix(self) -> str:
        """Random deployment suffix, generated on first use and kept for the deployment's lifetime."""
        if not self.suffix:
            self.suffix = generate_suffix()
            logger.info("generated deployment suffix %s", self.suffix)
        return self.suffix

    def get(self, address: str) -> Optional[ResourceRecord]:
        return self.records.get(address)

    def put(self, record: ResourceRecord) -> None:
        self.records[record.address] = record

    def remove(self, address: str) -> None:
        self.records.pop(address, None)

    def addresses(self) -> List[str]:
        return list(self.records)

    def teardown_order(self, addresses: List[str]) -> List[str]:
        """
        Recorded addresses ordered so that every consumer comes before what it
        depends on, using the dependencies kept in state. Ties go alphabetically.
        """
        remaining = {a for a in addresses if a in self.records}
        order: List[str] = []
        while remaining:
            needed = set()
            for address in remaining:
                needed.update(d for d in self.records[address].dependencies if d in remaining)
            leaves = sorted(remaining - needed) or sorted(remaining)
            order.extend(leaves)
            remaining -= set(leaves)
        return order
