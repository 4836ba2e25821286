# Copyright 2010-present MongoDB, Inc.
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

"""Test suite for mongowire."""
from __future__ import annotations

import unittest


class MongoWireTestCase(unittest.TestCase):
    pass


class UnitTest(MongoWireTestCase):
    """Base class for TestCases that don't require a connection to MongoDB."""


class AsyncUnitTest(unittest.IsolatedAsyncioTestCase):
    """Async base class for TestCases that don't require a connection to MongoDB.

    Every test runs on its own event loop.
    """


__all__ = ["AsyncUnitTest", "MongoWireTestCase", "UnitTest", "unittest"]
