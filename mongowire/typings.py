# Copyright 2022-Present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
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

"""Type aliases used by mongowire"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, Union

# Common Shared Types.
_Address = Tuple[str, Optional[int]]
ClusterTime = Mapping[str, Any]

# Called with every reply of an exhaust exchange.
_ReplyHandler = Callable[[Any], Union[None, Awaitable[None]]]

__all__ = [
    "_Address",
    "_ReplyHandler",
    "ClusterTime",
]
