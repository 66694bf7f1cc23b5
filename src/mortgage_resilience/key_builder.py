"""Deterministic deduplication key derivation.

Pure helpers with no cache state. Callers usually want a business-meaningful
key such as ``"rates:CA:25:fixed:500000:50000"``; the helpers here build such
keys from arguments, and ``hash_key`` provides the stable default fingerprint.
"""

import hashlib
import inspect
import json
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .core.constants import DEFAULT_KEY_PREFIX, KEY_ARGS_SEPARATOR, KEY_HASH_LENGTH
from .core.validators import validate_key_prefix


def hash_key(key: str) -> str:
    """Return the SHA-256 hex digest of a key.

    Stable across processes and Python versions; used as the default
    key generator of the deduplication cache.
    """
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def stringify_argument(arg: Any) -> str:
    """Render one argument for a human-readable key.

    Containers are rendered as key-sorted JSON so that equal values always
    produce the same text; everything else uses ``str()``.
    """
    if isinstance(arg, (dict, list, tuple, set, frozenset)):
        return json.dumps(_normalize(arg), sort_keys=True, separators=(",", ":"), default=str)
    return str(arg)


def args_only_key(*args: Any) -> str:
    """Build a key from the arguments alone.

    Example:
        args_only_key("CA", 25, "fixed") -> "CA|25|fixed"
    """
    return KEY_ARGS_SEPARATOR.join(stringify_argument(arg) for arg in args)


def function_and_args_key(func: Callable[..., Any], *args: Any) -> str:
    """Build a key from a function identity plus its arguments.

    Example:
        function_and_args_key(fetch_rates, "CA", 25) -> "fetch_rates:CA|25"
    """
    name = getattr(func, "__name__", None) or type(func).__name__
    return f"{name}:{args_only_key(*args)}"


def fields_key(fields: Iterable[str]) -> Callable[..., str]:
    """Create a key generator extracting named fields from the arguments.

    For each field, the value is taken from the first argument (mapping or
    object) that carries it; missing fields contribute an empty string.

    Example:
        ```python
        key_for = fields_key(["state", "term", "loan_type"])
        key_for({"state": "CA", "term": 25, "loan_type": "fixed", "name": "x"})
        # -> "CA|25|fixed"
        ```
    """
    field_names = list(fields)

    def generate(*args: Any) -> str:
        return KEY_ARGS_SEPARATOR.join(_extract_field(args, name) for name in field_names)

    return generate


def _extract_field(args: tuple[Any, ...], name: str) -> str:
    for arg in args:
        if isinstance(arg, Mapping):
            if name in arg:
                return stringify_argument(arg[name])
        elif not isinstance(arg, (str, bytes, int, float, bool)) and hasattr(arg, name):
            return stringify_argument(getattr(arg, name))
    return ""


def _normalize(obj: Any) -> Any:
    """Normalize an object for JSON serialization."""
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, (list, tuple)):
        return [_normalize(item) for item in obj]
    if isinstance(obj, Mapping):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        # Sort by type name first so mixed-type sets do not raise TypeError
        normalized_items = [_normalize(item) for item in obj]
        return sorted(normalized_items, key=lambda x: (type(x).__name__, str(x)))
    return str(obj)


class DefaultKeyBuilder:
    """Key builder for decorated functions using SHA-256.

    Generates deterministic keys in the format:
    {prefix}:{module}.{qualname}:{hash_args}

    The hash covers the serialized arguments. For methods, 'self' and 'cls'
    are excluded by default so that instances share entries for equal
    arguments. Instances configured differently (one rate provider per
    tenant, say) must not share results; build those keys with
    ``include_instance=True`` so the bound object's identity is hashed too.

    Attributes:
        prefix: Prefix for every generated key
        include_instance: Whether 'self'/'cls' identity is part of the key
    """

    def __init__(self, prefix: str = DEFAULT_KEY_PREFIX, *, include_instance: bool = False) -> None:
        """Initialize the key builder.

        Args:
            prefix: Key prefix (default: "dedup")
            include_instance: Scope method keys to the bound instance or class

        Raises:
            ValidationError: If prefix is empty
        """
        validate_key_prefix(prefix)
        self._prefix = prefix
        self._include_instance = include_instance

    @property
    def prefix(self) -> str:
        """Key prefix."""
        return self._prefix

    @property
    def include_instance(self) -> bool:
        return self._include_instance

    def build_key(self, func: Callable[..., Any], args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
        """Build a deduplication key.

        Args:
            func: Decorated function
            args: Positional arguments
            kwargs: Keyword arguments

        Returns:
            Key in the format prefix:path:hash
        """
        func_path = self._get_function_path(func)
        filtered_args = self._filter_method_args(func, args)
        args_hash = self._hash_arguments(filtered_args, kwargs)
        return f"{self._prefix}:{func_path}:{args_hash}"

    def _get_function_path(self, func: Callable[..., Any]) -> str:
        module = getattr(func, "__module__", "unknown")
        qualname = getattr(func, "__qualname__", getattr(func, "__name__", type(func).__name__))
        return f"{module}.{qualname}"

    def _filter_method_args(self, func: Callable[..., Any], args: tuple[Any, ...]) -> tuple[Any, ...]:
        """Drop 'self' or 'cls' from method arguments, or replace it by its identity."""
        if not args:
            return args

        try:
            params = list(inspect.signature(func).parameters)
            if params and params[0] in ("self", "cls"):
                if self._include_instance:
                    # id() identifies the instance within this process
                    bound = args[0]
                    return (f"{type(bound).__qualname__}@{id(bound):x}", *args[1:])
                return args[1:]
        except (ValueError, TypeError):
            pass

        return args

    def _hash_arguments(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
        serialized = json.dumps(
            {"args": _normalize(args), "kwargs": _normalize(dict(sorted(kwargs.items())))},
            sort_keys=True,
            default=str,
        )
        return hash_key(serialized)[:KEY_HASH_LENGTH]
