#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Type aliases and typing re-exports shared by all modules in this package.

Modules use "from .internal_types import *" to pick these up.
"""

from __future__ import annotations

from typing import (
    Dict, List, Optional, Union, Any, Tuple, Set, Callable, Awaitable,
    Mapping, MutableMapping, Iterable, Iterator, Sequence,
    AsyncIterable, AsyncIterator, AsyncContextManager, TYPE_CHECKING, cast,
  )

from types import TracebackType
from typing_extensions import Self

Jsonable = Union[None, bool, int, float, str, List['Jsonable'], Dict[str, 'Jsonable']]
"""A type that can be serialized to/from JSON"""

JsonableDict = Dict[str, Jsonable]
"""A JSON object (dict) with string keys"""

HostAndPort = Tuple[str, int]
"""An (ip_address, port) socket address tuple"""

__all__ = [
    'Dict', 'List', 'Optional', 'Union', 'Any', 'Tuple', 'Set', 'Callable', 'Awaitable',
    'Mapping', 'MutableMapping', 'Iterable', 'Iterator', 'Sequence',
    'AsyncIterable', 'AsyncIterator', 'AsyncContextManager', 'TYPE_CHECKING', 'cast',
    'TracebackType', 'Self',
    'Jsonable', 'JsonableDict', 'HostAndPort',
]
