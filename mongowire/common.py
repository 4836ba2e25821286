# Copyright 2011-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.


"""Functions and constants common to multiple mongowire modules."""
from __future__ import annotations

from typing import Any, Callable, Optional, Sequence

from mongowire.errors import ConfigurationError

# Defaults until we connect to a server and get updated limits.
MAX_BSON_SIZE = 16 * (1024**2)
MAX_MESSAGE_SIZE: int = 64 * (1024**2)
MIN_WIRE_VERSION = 0
MAX_WIRE_VERSION = 0

# First wire version that speaks OP_MSG (MongoDB 3.6).
MIN_OP_MSG_WIRE_VERSION = 6

# First wire version that supports auto encryption (MongoDB 4.2).
MIN_ENCRYPTION_WIRE_VERSION = 8

# Default connect timeout in seconds.
CONNECT_TIMEOUT = 20.0


def raise_config_error(key: str, dummy: Any) -> None:
    """Raise ConfigurationError with the given key name."""
    raise ConfigurationError(f"Unknown option {key}")


def validate_boolean(option: str, value: Any) -> bool:
    """Validates that 'value' is True or False."""
    if isinstance(value, bool):
        return value
    raise TypeError(f"{option} must be True or False, was: {option}={value!r}")


def validate_integer(option: str, value: Any) -> int:
    """Validates that 'value' is an integer (or basestring representation)."""
    if isinstance(value, int):
        return value
    elif isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"The value of {option} must be an integer, not {value!r}") from None
    raise TypeError(f"Wrong type for {option}, value must be an integer, not {type(value)}")


def validate_positive_integer(option: str, value: Any) -> int:
    """Validate that 'value' is a positive integer, which does not include 0."""
    val = validate_integer(option, value)
    if val <= 0:
        raise ValueError(f"The value of {option} must be greater than 0, not {val}")
    return val


def validate_positive_integer_or_none(option: str, value: Any) -> Optional[int]:
    """Validate that 'value' is a positive integer or None."""
    if value is None:
        return value
    return validate_positive_integer(option, value)


def validate_string(option: str, value: Any) -> str:
    """Validates that 'value' is an instance of `str`."""
    if isinstance(value, str):
        return value
    raise TypeError(f"Wrong type for {option}, value must be an instance of str, not {type(value)}")


def validate_string_or_none(option: str, value: Any) -> Optional[str]:
    """Validates that 'value' is an instance of `str` or None."""
    if value is None:
        return value
    return validate_string(option, value)


def validate_positive_float(option: str, value: Any) -> float:
    """Validates that 'value' is a float, or can be converted to one, and is
    positive.
    """
    errmsg = f"{option} must be an integer or float"
    try:
        value = float(value)
    except ValueError:
        raise ValueError(errmsg) from None
    except TypeError:
        raise TypeError(errmsg) from None

    # Cap floats at one billion, a reasonable approximation for infinity.
    if not 0 < value < 1e9:
        raise ValueError(f"{option} must be greater than 0 and less than one billion")
    return value


def validate_timeout_or_none_or_zero(option: Any, value: Any) -> Optional[float]:
    """Validates a timeout specified in seconds returning
    a value in floating point seconds. value=0 and value="0" are treated the
    same as value=None which means unlimited timeout.
    """
    if value is None or value == 0 or value == "0":
        return None
    return validate_positive_float(option, value)


def validate_event_listeners(option: str, value: Sequence[Any]) -> Sequence[Any]:
    """Validate event listeners"""
    from mongowire.monitoring import _validate_event_listeners

    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{option} must be a list or tuple, not {type(value)}")
    return _validate_event_listeners(option, value)


def validate_port(option: str, value: Any) -> int:
    """Validate a TCP port number."""
    port = validate_integer(option, value)
    if not 0 < port < 65536:
        raise ValueError(f"{option} must be an integer between 0 and 65535, not {port}")
    return port


# Dictionary where keys are the names of ConnectionOptions keyword
# arguments, and values are functions that validate the value.
VALIDATORS: dict[str, Callable[[Any, Any], Any]] = {
    "socket_timeout": validate_timeout_or_none_or_zero,
    "connect_timeout": validate_timeout_or_none_or_zero,
    "monitor_commands": validate_boolean,
    "event_listeners": validate_event_listeners,
    "load_balanced": validate_boolean,
    "proxy_host": validate_string_or_none,
    "proxy_port": validate_port,
    "max_message_size": validate_positive_integer_or_none,
}


def validate(option: str, value: Any) -> tuple[str, Any]:
    """Generic validation function."""
    validator = VALIDATORS.get(option, raise_config_error)
    value = validator(option, value)
    return option, value
