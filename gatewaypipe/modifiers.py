"""Register of request and response modifiers, and the loader feeding it.

A modifier factory receives the plugin configuration as a dict and returns a
modifier (or None when it declines). A modifier receives a request or
response wrapper and returns a replacement, or anything else to leave the
current one untouched. It rejects by raising.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from gatewaypipe.register import Namespaced

NAMESPACE = "gatewaypipe/proxy/plugin"
"""Key of the plugin section in extra configuration."""

_REQUEST_NAMESPACE = NAMESPACE + "/request"
_RESPONSE_NAMESPACE = NAMESPACE + "/response"

Modifier = Callable[[Any], Any]
ModifierFactory = Callable[[dict], Optional[Modifier]]
RegisterModifierFunc = Callable[[str, ModifierFactory, bool, bool], None]

_modifier_register = Namespaced()


class LoaderError(Exception):
    """One or more registerers could not be loaded."""

    def __init__(self, errors: list[str], loaded: int) -> None:
        self.errors = list(errors)
        self.loaded = loaded
        super().__init__(
            f"plugin loader found {len(self.errors)} error(s): \n" + "\n".join(self.errors)
        )

    def __len__(self) -> int:
        return len(self.errors)


def _get_modifier(namespace: str, name: str) -> Optional[ModifierFactory]:
    try:
        found = _modifier_register.get(namespace).get(name)
    except KeyError:
        return None
    return found if callable(found) else None


def get_request_modifier(name: str) -> Optional[ModifierFactory]:
    """Return the request modifier factory registered as name, or None."""
    return _get_modifier(_REQUEST_NAMESPACE, name)


def get_response_modifier(name: str) -> Optional[ModifierFactory]:
    """Return the response modifier factory registered as name, or None."""
    return _get_modifier(_RESPONSE_NAMESPACE, name)


def register_modifier(
    name: str,
    modifier_factory: ModifierFactory,
    applies_to_request: bool,
    applies_to_response: bool,
) -> None:
    """Register modifier_factory under name for requests and/or responses."""
    if applies_to_request:
        _modifier_register.register(_REQUEST_NAMESPACE, name, modifier_factory)
    if applies_to_response:
        _modifier_register.register(_RESPONSE_NAMESPACE, name, modifier_factory)


def _registerer_name(registerer: Any) -> str:
    name = getattr(registerer, "name", None)
    return name if isinstance(name, str) else type(registerer).__name__


def _open(registerer: Any, register_func: RegisterModifierFunc, logger: Any, context: Any) -> None:
    register_modifiers = getattr(registerer, "register_modifiers", None)
    if not callable(register_modifiers):
        raise TypeError("modifier plugin loader: unknown type")

    if logger is not None:
        register_logger = getattr(registerer, "register_logger", None)
        if callable(register_logger):
            register_logger(logger)

    register_context = getattr(registerer, "register_context", None)
    if callable(register_context):
        register_context(context)

    register_modifiers(register_func)


def load(
    registerers: Iterable[Any],
    register_func: RegisterModifierFunc = register_modifier,
    logger: Any = None,
    context: Any = None,
) -> int:
    """Let every registerer register its modifiers and return how many loaded.

    A registerer exposes ``register_modifiers(register_func)`` and optionally
    ``register_logger(logger)`` and ``register_context(context)``. Raises
    LoaderError, carrying the number loaded, if any of them failed.
    """
    errors: list[str] = []
    loaded = 0
    for index, registerer in enumerate(registerers):
        try:
            _open(registerer, register_func, logger, context)
        except Exception as exc:
            errors.append(f"plugin #{index} ({_registerer_name(registerer)}): {exc}")
            continue
        loaded += 1
    if errors:
        raise LoaderError(errors, loaded)
    return loaded