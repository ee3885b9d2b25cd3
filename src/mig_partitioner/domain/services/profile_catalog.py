"""Profile catalog: human profile names to driver template ids.

The built-in tables map the names printed by ``nvidia-smi mig -lgip`` to
GPU instance / compute instance profile ids and the number of placement
slots an instance occupies.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from mig_partitioner.domain.entities.profile import Profile
from mig_partitioner.domain.errors import ProfileNotFoundError


def _table(*rows: tuple[str, int, int, int]) -> Mapping[str, Profile]:
    return MappingProxyType({name: Profile(name, gid, cid, size) for name, gid, cid, size in rows})


A100_PROFILES = _table(
    ("1g.5gb", 0, 0, 1),
    ("1g.10gb", 9, 9, 2),
    ("2g.10gb", 1, 1, 2),
    ("3g.20gb", 2, 2, 4),
    ("4g.20gb", 3, 3, 4),
    ("7g.40gb", 4, 4, 8),
)

A30_PROFILES = _table(
    ("1g.6gb", 0, 0, 1),
    ("2g.12gb", 1, 1, 2),
    ("4g.24gb", 3, 3, 4),
)

BUILTIN_TABLES: Mapping[str, Mapping[str, Profile]] = MappingProxyType({
    "A100": A100_PROFILES,
    "A30": A30_PROFILES,
})


class ProfileCatalog:
    """Read-only lookup of profiles by name."""

    def __init__(self, profiles: Iterable[Profile]) -> None:
        self._profiles: dict[str, Profile] = {}
        for profile in profiles:
            self._profiles[profile.name] = profile

    @classmethod
    def for_device_model(
        cls, model: str, extra: Optional[Iterable[Profile]] = None
    ) -> ProfileCatalog:
        """Build a catalog from a built-in table plus optional overrides.

        Args:
            model: Built-in table name ("A100", "A30").
            extra: Additional profiles; they replace built-ins of the same name.

        Raises:
            KeyError: If the model has no built-in table.
        """
        try:
            table = BUILTIN_TABLES[model]
        except KeyError:
            raise KeyError(f"No built-in profile table for device model {model!r}") from None
        return cls([*table.values(), *(extra or ())])

    def lookup(self, name: str) -> Profile:
        """Get a profile by name.

        Raises:
            ProfileNotFoundError: If the name is not in the catalog.
        """
        profile = self._profiles.get(name)
        if profile is None:
            raise ProfileNotFoundError(
                f"Unknown profile; known profiles: {', '.join(self.names())}",
                profile=name,
            )
        return profile

    def names(self) -> list[str]:
        return sorted(self._profiles)

    def profiles(self) -> list[Profile]:
        return [self._profiles[name] for name in self.names()]

    def for_template(self, template_id: int) -> list[Profile]:
        """All profiles created from a GPU instance template."""
        return [p for p in self.profiles() if p.instance_template_id == template_id]

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
