# -*- coding: utf-8 -*-
"""
Lado servidor: agrupación del roster por jugador y upsert de keys del addon.

- aggregate(): personajes de un roster -> un PlayerAggregate por userId + un OrphanEntry por
  personaje sin usuario. Cálculo puro, no muta nada, seguro de llamar en paralelo.
- RosterStore: referencia en memoria del contrato de persistencia (personaje único por
  (name, realm), reemplazo total de keys "de bolsa" en cada sync).
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(ts: Optional[datetime]) -> str:
    if ts is None:
        return ""
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class MythicKey:
    id: int
    character_id: int
    dungeon: str
    level: int
    affixes: List[str] = field(default_factory=list)
    is_from_bag: bool = False
    completed: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "characterId": self.character_id,
            "dungeon": self.dungeon,
            "level": self.level,
            "affixes": list(self.affixes),
            "isFromBag": self.is_from_bag,
            "completed": self.completed,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class CanonicalCharacter:
    id: int
    name: str
    realm: str
    guild_id: Optional[int] = None
    user_id: Optional[int] = None
    is_main: bool = False
    is_active: bool = True
    mythic_keys: List[MythicKey] = field(default_factory=list)
    last_sync: Optional[datetime] = None

    @property
    def identity(self) -> Tuple[str, str]:
        return self.name.lower(), self.realm


@dataclass
class PlayerAggregate:
    user_id: int
    main_character_name: str
    alt_count: int
    keys: List[MythicKey]
    has_alt_keys: bool
    total_keys: int
    alt_names: List[str] = field(default_factory=list)
    # Otros personajes marcados isMain en el mismo grupo (gana el primero)
    duplicate_mains: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "name": self.main_character_name,
            "main": self.main_character_name,
            "altCount": self.alt_count,
            "alts": list(self.alt_names),
            "keys": [k.to_dict() for k in self.keys],
            "hasAltKeys": self.has_alt_keys,
            "totalKeys": self.total_keys,
            "duplicateMains": list(self.duplicate_mains),
        }


@dataclass
class OrphanEntry:
    name: str
    keys: List[MythicKey]
    realm: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "realm": self.realm,
            "userId": None,
            "isOrphan": True,
            "keys": [k.to_dict() for k in self.keys],
        }


AggregateEntry = Union[PlayerAggregate, OrphanEntry]


# =========================
# Agregación (pura)
# =========================
def select_guild_roster(
    characters: Iterable[CanonicalCharacter],
    guild_id: int,
    member_user_ids: Iterable[int],
) -> List[CanonicalCharacter]:
    """
    Personajes visibles para la guild: asignados a la guild O cuyo dueño es miembro
    (twinks aparcados en otras guilds). Solo activos, orden de entrada, sin repetidos.
    """
    members = {u for u in member_user_ids if u is not None}
    seen = set()
    out: List[CanonicalCharacter] = []
    for c in characters:
        if not c.is_active:
            continue
        if c.guild_id != guild_id and (c.user_id is None or c.user_id not in members):
            continue
        if c.identity in seen:
            continue
        seen.add(c.identity)
        out.append(c)
    return out


def aggregate(roster: Iterable[CanonicalCharacter]) -> List[AggregateEntry]:
    """
    Agrupa por userId y elige un main por grupo.

    Main = primer personaje con is_main; si ninguno lo tiene, el primero del grupo en el orden
    recibido. Ese orden lo define quien consulta la base: no se inventa otro desempate.
    """
    active = [c for c in roster if c.is_active]

    groups: Dict[Any, List[CanonicalCharacter]] = {}
    for c in active:
        if c.user_id is not None:
            groups.setdefault(c.user_id, []).append(c)

    processed = set()
    result: List[AggregateEntry] = []

    for c in active:
        if c.user_id is None:
            result.append(OrphanEntry(name=c.name, realm=c.realm, keys=list(c.mythic_keys)))
            continue
        if c.user_id in processed:
            continue

        members = groups[c.user_id]
        flagged = [m for m in members if m.is_main]
        main = flagged[0] if flagged else members[0]
        if len(flagged) > 1:
            logger.debug(f"userId={c.user_id} tiene {len(flagged)} mains marcados; uso {main.name}")

        total_keys = sum(len(m.mythic_keys) for m in members)
        result.append(PlayerAggregate(
            user_id=c.user_id,
            main_character_name=main.name,
            alt_count=len(members) - 1,
            keys=list(main.mythic_keys),
            has_alt_keys=total_keys > len(main.mythic_keys),
            total_keys=total_keys,
            alt_names=[m.name for m in members if m is not main],
            duplicate_mains=[m.name for m in flagged[1:]],
        ))
        processed.add(c.user_id)

    return result


def aggregate_guild(
    characters: Iterable[CanonicalCharacter],
    guild_id: int,
    member_user_ids: Iterable[int],
) -> List[AggregateEntry]:
    return aggregate(select_guild_roster(characters, guild_id, member_user_ids))


# =========================
# Store en memoria
# =========================
_EDITABLE_FIELDS = {f.name for f in dataclass_fields(CanonicalCharacter)} - {"id", "name", "realm"}


class RosterStore:
    def __init__(self):
        self._characters: Dict[Tuple[str, str], CanonicalCharacter] = {}
        self._char_ids = itertools.count(1)
        self._key_ids = itertools.count(1)
        self._lock = threading.Lock()

    def upsert_character(self, name: str, realm: str, /, **fields) -> CanonicalCharacter:
        for attr in fields:
            if attr not in _EDITABLE_FIELDS:
                raise AttributeError(f"Campo no editable: {attr}")

        key = (name.lower(), realm)
        with self._lock:
            char = self._characters.get(key)
            if char is None:
                char = CanonicalCharacter(id=next(self._char_ids), name=name.lower(), realm=realm)
                self._characters[key] = char
            for attr, value in fields.items():
                setattr(char, attr, value)
            return char

    def get(self, name: str, realm: str) -> Optional[CanonicalCharacter]:
        return self._characters.get((str(name).lower(), realm))

    def characters(self) -> List[CanonicalCharacter]:
        with self._lock:
            return list(self._characters.values())

    def add_key(self, character: CanonicalCharacter, dungeon: str, level: int, **fields) -> MythicKey:
        with self._lock:
            key = MythicKey(
                id=next(self._key_ids),
                character_id=character.id,
                dungeon=dungeon,
                level=level,
                created_at=fields.pop("created_at", None) or _utcnow(),
                **fields,
            )
            character.mythic_keys.append(key)
            return key

    def apply_addon_sync(self, keys: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Aplica un lote del bridge. Por cada personaje conocido: se borran TODAS sus keys de bolsa
        y se inserta la reportada (el addon solo ve la key actual). Desconocidos se informan.
        """
        if not isinstance(keys, list):
            raise ValueError("Invalid keys data")

        now = now or _utcnow()
        updated: List[str] = []
        unknown: List[str] = []
        invalid = 0

        logger.info(f"[AddonSync] Procesando {len(keys)} keys...")
        for item in keys:
            if not isinstance(item, dict):
                invalid += 1
                continue
            name, realm, level = item.get("name"), item.get("realm"), item.get("level")
            dungeon = item.get("dungeon")
            if not isinstance(name, str) or not isinstance(realm, str) or not isinstance(dungeon, str) \
                    or isinstance(level, bool) or not isinstance(level, int):
                invalid += 1
                continue

            char = self.get(name, realm)
            if char is None:
                unknown.append(f"{name.lower()}-{realm}")
                continue

            with self._lock:
                char.mythic_keys = [k for k in char.mythic_keys if not k.is_from_bag]
                char.mythic_keys.append(MythicKey(
                    id=next(self._key_ids),
                    character_id=char.id,
                    dungeon=dungeon,
                    level=level,
                    affixes=[],
                    is_from_bag=True,
                    completed=False,
                    created_at=now,
                ))
                char.last_sync = now
            updated.append(f"{char.name}-{char.realm}")

        return {
            "success": True,
            "message": f"Synced {len(keys)} keys",
            "updated": updated,
            "unknown": unknown,
            "invalid": invalid,
        }
