"""Profile store capability and simple implementations."""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Union

from autofill_engine.core.errors import ProfileNotFoundError
from autofill_engine.core.models import Profile
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)


class ProfileStore(Protocol):
    """Read-only profile lookup used by the scheduler."""

    def get_profile_by_name(self, name: str) -> Profile:
        ...

    def get_profile(self, profile_id: str) -> Profile:
        ...


class InMemoryProfileStore:
    """Profile store backed by a dictionary."""

    def __init__(self, profiles: Optional[Iterable[Profile]] = None):
        self._by_id: Dict[str, Profile] = {}
        for profile in profiles or []:
            self.add(profile)

    def add(self, profile: Profile) -> None:
        self._by_id[profile.id] = profile

    def list_profiles(self) -> List[Profile]:
        return list(self._by_id.values())

    def get_profile(self, profile_id: str) -> Profile:
        try:
            return self._by_id[profile_id]
        except KeyError:
            raise ProfileNotFoundError(f"Profile not found: {profile_id}") from None

    def get_profile_by_name(self, name: str) -> Profile:
        for profile in self._by_id.values():
            if profile.name == name:
                return profile
        raise ProfileNotFoundError(f"Profile not found: {name}")

    def resolve(self, key: str) -> Profile:
        """Look a profile up by id, falling back to name."""
        if key in self._by_id:
            return self._by_id[key]
        return self.get_profile_by_name(key)


class JsonProfileStore(InMemoryProfileStore):
    """
    Profile store loaded from a JSON file.

    The file holds either a list of profile objects or an object with a
    ``profiles`` list.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> List[Profile]:
        if not self.path.exists():
            raise ProfileNotFoundError(f"Profiles file not found: {self.path}")

        data = json.loads(self.path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("profiles", [])

        profiles = [Profile.model_validate(item) for item in data]
        logger.info("Loaded profiles", path=str(self.path), count=len(profiles))
        return profiles
