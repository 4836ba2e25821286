# Copyright 2012-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License",
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Read preference values attached to commands.

Server selection is not done here. A read preference only decides how a
command is encoded: the ``$readPreference`` field of an OP_MSG body, the
``secondaryOk`` bit of an OP_QUERY, and the ``$query`` wrapper used for
legacy reads through mongos.
"""
from __future__ import annotations

from collections import abc
from typing import Any, Mapping, Optional, Sequence

_PRIMARY = 0
_PRIMARY_PREFERRED = 1
_SECONDARY = 2
_SECONDARY_PREFERRED = 3
_NEAREST = 4


_MONGOS_MODES = (
    "primary",
    "primaryPreferred",
    "secondary",
    "secondaryPreferred",
    "nearest",
)

_TagSets = Sequence[Mapping[str, Any]]


def _validate_tag_sets(tag_sets: Optional[_TagSets]) -> Optional[_TagSets]:
    """Validate tag sets for a MongoClient."""
    if tag_sets is None:
        return tag_sets

    if not isinstance(tag_sets, (list, tuple)):
        raise TypeError(f"Tag sets {tag_sets!r} invalid, must be a sequence")
    if len(tag_sets) == 0:
        raise ValueError(
            f"Tag sets {tag_sets!r} invalid, must be None or contain at least one set of tags"
        )

    for tags in tag_sets:
        if not isinstance(tags, abc.Mapping):
            raise TypeError(
                f"Tag set {tags!r} invalid, must be an instance of dict, "
                "bson.son.SON or other type that inherits from "
                "collection.Mapping"
            )

    return list(tag_sets)


def _validate_max_staleness(max_staleness: Any) -> int:
    """Validate max_staleness."""
    if max_staleness == -1:
        return -1

    if not isinstance(max_staleness, int):
        raise TypeError(f"maxStalenessSeconds must be a positive integer, not {max_staleness}")

    if max_staleness <= 0:
        raise ValueError(f"maxStalenessSeconds must be a positive integer, not {max_staleness}")

    return max_staleness


class _ServerMode:
    """Base class for all read preferences."""

    __slots__ = ("__mongos_mode", "__mode", "__tag_sets", "__max_staleness")

    def __init__(
        self,
        mode: int,
        tag_sets: Optional[_TagSets] = None,
        max_staleness: int = -1,
    ) -> None:
        self.__mongos_mode = _MONGOS_MODES[mode]
        self.__mode = mode
        self.__tag_sets = _validate_tag_sets(tag_sets)
        self.__max_staleness = _validate_max_staleness(max_staleness)

    @property
    def name(self) -> str:
        """The name of this read preference."""
        return self.__class__.__name__

    @property
    def mongos_mode(self) -> str:
        """The mongos mode of this read preference."""
        return self.__mongos_mode

    @property
    def document(self) -> dict[str, Any]:
        """Read preference as a document."""
        doc: dict[str, Any] = {"mode": self.__mongos_mode}
        if self.__tag_sets not in (None, [{}]):
            doc["tags"] = self.__tag_sets
        if self.__max_staleness != -1:
            doc["maxStalenessSeconds"] = self.__max_staleness
        return doc

    @property
    def mode(self) -> int:
        """The mode of this read preference instance."""
        return self.__mode

    @property
    def tag_sets(self) -> _TagSets:
        """The tag sets of this read preference, ``[{}]`` when unset."""
        return list(self.__tag_sets) if self.__tag_sets else [{}]

    @property
    def max_staleness(self) -> int:
        """The maximum replication lag in seconds, or -1 for no maximum."""
        return self.__max_staleness

    @property
    def secondary_ok(self) -> bool:
        """True if a legacy query may be answered by a secondary."""
        return self.__mode != _PRIMARY

    def __repr__(self) -> str:
        return "{}(tag_sets={!r}, max_staleness={!r})".format(
            self.name,
            self.__tag_sets,
            self.__max_staleness,
        )

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, _ServerMode):
            return (
                self.mode == other.mode
                and self.tag_sets == other.tag_sets
                and self.max_staleness == other.max_staleness
            )
        return NotImplemented

    def __ne__(self, other: Any) -> bool:
        return not self == other


class Primary(_ServerMode):
    """Primary read preference. Commands are only answered by the primary."""

    __slots__ = ()

    def __init__(self) -> None:
        super().__init__(_PRIMARY)

    def __repr__(self) -> str:
        return "Primary()"

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, _ServerMode):
            return other.mode == _PRIMARY
        return NotImplemented


class PrimaryPreferred(_ServerMode):
    """PrimaryPreferred read preference."""

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_PRIMARY_PREFERRED, tag_sets, max_staleness)


class Secondary(_ServerMode):
    """Secondary read preference."""

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_SECONDARY, tag_sets, max_staleness)


class SecondaryPreferred(_ServerMode):
    """SecondaryPreferred read preference."""

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_SECONDARY_PREFERRED, tag_sets, max_staleness)


class Nearest(_ServerMode):
    """Nearest read preference."""

    __slots__ = ()

    def __init__(self, tag_sets: Optional[_TagSets] = None, max_staleness: int = -1) -> None:
        super().__init__(_NEAREST, tag_sets, max_staleness)


class ReadPreference:
    """An enum that defines some commonly used read preference modes.

    Apps can also create a custom read preference, for example::

       Nearest(tag_sets=[{"node":"analytics"}])
    """

    PRIMARY = Primary()
    PRIMARY_PREFERRED = PrimaryPreferred()
    SECONDARY = Secondary()
    SECONDARY_PREFERRED = SecondaryPreferred()
    NEAREST = Nearest()
