"""
Persistent State Store
JSON file holding the block watermark and per-token allocations
"""

import os
import json
import logging
import tempfile
from typing import Dict, Iterable, Optional

from vault_agent.errors import StateStoreError
from vault_agent.models import Allocation, BotState

logger = logging.getLogger(__name__)


class JsonStateStore:
    """Read-modify-write store. Every write replaces the file atomically."""

    def __init__(self, path: str, start_block: int = 0):
        self.path = path
        self.start_block = start_block
        self._state: Optional[BotState] = None

    def initialize(self, tokens: Iterable[str], default_chain: str = 'ARBITRUM') -> BotState:
        """Load (or create) the state file and seed zero allocations for new tokens"""
        state = self._read()
        seeded = []
        for token in tokens:
            if token not in state.allocations:
                state.allocations[token] = Allocation(amount=0, at_apy=0.0, chain=default_chain)
                seeded.append(token)

        if seeded or not os.path.exists(self.path):
            self._write(state)
        self._state = state

        if seeded:
            logger.info(f"📝 Seeded allocations for {', '.join(seeded)}")
        logger.info(f"✅ State loaded from {self.path} (lastKnownBlock={state.last_known_block})")
        return self.get_state()

    def read_state(self) -> BotState:
        """Read the file as it is on disk, without creating or seeding it"""
        return self._read()

    def get_state(self) -> BotState:
        state = self._loaded()
        return BotState(
            last_known_block=state.last_known_block,
            allocations={token: self._copy(alloc) for token, alloc in state.allocations.items()}
        )

    def set_state(self, last_known_block: Optional[int] = None,
                  allocations: Optional[Dict[str, Allocation]] = None):
        """Commit the given fields together in one write"""
        current = self._loaded()
        state = BotState(
            last_known_block=current.last_known_block if last_known_block is None else last_known_block,
            allocations=dict(current.allocations)
        )
        if allocations:
            for token, alloc in allocations.items():
                state.allocations[token] = self._copy(alloc)
        self._write(state)
        self._state = state

    def get_allocation(self, token: str) -> Optional[Allocation]:
        alloc = self._loaded().allocations.get(token)
        return self._copy(alloc) if alloc else None

    def set_allocation(self, token: str, allocation: Allocation):
        self.set_state(allocations={token: allocation})

    def get_last_known_block(self) -> int:
        return self._loaded().last_known_block

    def set_last_known_block(self, block: int):
        self.set_state(last_known_block=block)

    def is_healthy(self) -> bool:
        try:
            self._read()
            return True
        except StateStoreError as e:
            logger.error(f"❌ State store unhealthy: {e}")
            return False

    # ---- internals ----

    def _loaded(self) -> BotState:
        if self._state is None:
            raise StateStoreError("State store used before initialize()")
        return self._state

    @staticmethod
    def _copy(alloc: Allocation) -> Allocation:
        return Allocation(amount=alloc.amount, at_apy=alloc.at_apy, chain=alloc.chain)

    def _read(self) -> BotState:
        if not os.path.exists(self.path):
            logger.info(f"📝 No state file at {self.path}, starting from block {self.start_block}")
            return BotState(last_known_block=self.start_block)

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            return BotState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StateStoreError(f"State file {self.path} is unreadable or corrupt: {e}") from e

    def _write(self, state: BotState):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.bot-state-', suffix='.tmp')
            try:
                with os.fdopen(fd, 'w') as f:
                    json.dump(state.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e
