"""
Participant rosters used for speaker resolution.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from ..audio.transcript import ParticipantRosterEntry

logger = logging.getLogger(__name__)

DEFAULT_ROSTER = [
    ParticipantRosterEntry(id="chair", name="Chairperson", role="Chairperson"),
    ParticipantRosterEntry(id="mayor", name="Mayor", role="Mayor"),
    ParticipantRosterEntry(id="treasurer", name="Treasurer", role="Treasurer"),
    ParticipantRosterEntry(id="secretary", name="Secretary", role="Secretary"),
]


class RosterProvider(ABC):
    """Read-only source of known participants."""

    @abstractmethod
    def get_roster(self, association_id: Optional[str] = None) -> List[ParticipantRosterEntry]:
        """Return participants for a meeting (or the general roster when no association is given)."""


class StaticRosterProvider(RosterProvider):
    """Fixed roster (the generic default roster unless one is given)."""

    def __init__(self, entries: Optional[List[ParticipantRosterEntry]] = None):
        self.entries = list(entries) if entries is not None else list(DEFAULT_ROSTER)

    def get_roster(self, association_id: Optional[str] = None) -> List[ParticipantRosterEntry]:
        return list(self.entries)


class JsonRosterProvider(RosterProvider):
    """
    Roster loaded from a JSON file.

    The file holds either a list of participants, or an object mapping association ids
    to lists with an optional "default" list::

        {"default": [{"id": "p1", "name": "Jane Smith", "role": "Chairperson"}],
         "meeting-42": [...]}
    """

    def __init__(self, path: str):
        self.path = path

    def get_roster(self, association_id: Optional[str] = None) -> List[ParticipantRosterEntry]:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, dict):
            entries = data.get(association_id) if association_id else None
            if entries is None:
                entries = data.get("default", [])
        else:
            entries = data

        roster = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get("name"):
                logger.warning(f"Skipping invalid roster entry {index} in {self.path}")
                continue
            roster.append(
                ParticipantRosterEntry(
                    id=str(entry.get("id") or index),
                    name=entry["name"],
                    role=entry.get("role", ""),
                    voice_descriptor=entry.get("voice_descriptor"),
                )
            )
        return roster
