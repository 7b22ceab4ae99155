"""Review scopes: which changed files enter the diff.

A scope is either one of the two built-ins (``all``, ``staged``) or a custom
scope carrying a pure selector ``FileListContext -> list[str]``. Custom scopes
declared in ``.diffpanel.yml`` are compiled into such selectors when the config
is loaded; nothing is evaluated lazily from config text at review time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Union

from diffpanel_core.diff import filter_files
from diffpanel_core.errors import ConfigError, UnknownSelectionError
from diffpanel_core.models import FileListContext

logger = logging.getLogger(__name__)

ScopeSource = Literal["all", "staged"]
Selector = Callable[[FileListContext], list[str]]


@dataclass(frozen=True)
class BuiltInScope:
    id: ScopeSource
    label: str

    @property
    def source(self) -> ScopeSource:
        return self.id

    def get_files(self, context: FileListContext) -> list[str]:
        return list(context.staged_files if self.id == "staged" else context.all_files)


@dataclass(frozen=True)
class CustomScope:
    id: str
    label: str
    selector: Selector = field(compare=False)
    # Which diff the selected files are read from: the index or the branch.
    source: ScopeSource = "all"
    show_file_count: bool = True

    def get_files(self, context: FileListContext) -> list[str]:
        return list(self.selector(context))


Scope = Union[BuiltInScope, CustomScope]

DEFAULT_SCOPES: dict[str, BuiltInScope] = {
    "all": BuiltInScope("all", "All changes"),
    "staged": BuiltInScope("staged", "Staged changes"),
}


def _custom_scopes(config: Mapping[str, Any]) -> list[CustomScope]:
    return list(config.get("scopes") or [])


def resolve_scope(config: Mapping[str, Any], scope_id: str | None) -> Scope | None:
    """Resolve a scope id: custom scopes first, then the built-ins.

    Returns None when no id was given so the caller can ask interactively.
    Raises UnknownSelectionError when an id was given but matches nothing.
    """
    if not scope_id:
        return None

    for scope in _custom_scopes(config):
        if scope.id == scope_id:
            return scope

    if scope_id in DEFAULT_SCOPES:
        return DEFAULT_SCOPES[scope_id]

    raise UnknownSelectionError("scope", scope_id, available_scopes(config))


def get_files(scope: Scope, context: FileListContext) -> list[str]:
    return scope.get_files(context)


def available_scopes(config: Mapping[str, Any]) -> list[str]:
    ids = list(DEFAULT_SCOPES)
    for scope in _custom_scopes(config):
        if scope.id not in ids:
            ids.append(scope.id)
    return ids


def list_scopes(config: Mapping[str, Any]) -> list[Scope]:
    """Every selectable scope, custom definitions shadowing built-ins of the same id."""
    custom = {s.id: s for s in _custom_scopes(config)}
    return [custom.get(scope_id) or DEFAULT_SCOPES[scope_id] for scope_id in available_scopes(config)]


def file_count(scope: Scope, context: FileListContext) -> int | None:
    """Number of files the scope selects, or None when it should not be shown."""
    if isinstance(scope, CustomScope) and not scope.show_file_count:
        return None
    try:
        return len(scope.get_files(context))
    except Exception as e:
        # A broken user selector must not break the picker; resolving it later will raise.
        logger.warning("Scope %r could not list files: %s", scope.id, e)
        return None


def scope_options(scopes: list[Scope], context: FileListContext) -> list[tuple[str, str]]:
    """(id, label) pairs for an interactive picker, with file counts where known."""
    options = []
    for scope in scopes:
        count = file_count(scope, context)
        label = f"{scope.label} ({count} files)" if count is not None else scope.label
        options.append((scope.id, label))
    return options


def scope_from_config(entry: Mapping[str, Any]) -> CustomScope:
    """Compile a YAML scope definition into a CustomScope.

    Example::

        scopes:
          - id: backend
            label: Backend only
            source: all
            include: ["api/**", "services/**"]
            exclude: ["**/*.snap"]
    """
    if not isinstance(entry, Mapping) or not entry.get("id"):
        raise ConfigError(f"Scope definitions need an 'id': {entry!r}")

    source = entry.get("source", "all")
    if source not in ("all", "staged"):
        raise ConfigError(f"Scope {entry['id']!r}: source must be 'all' or 'staged', got {source!r}")

    include = tuple(entry.get("include") or ())
    exclude = tuple(entry.get("exclude") or ())

    def selector(context: FileListContext) -> list[str]:
        files = context.staged_files if source == "staged" else context.all_files
        return filter_files(files, include=include, exclude=exclude)

    return CustomScope(
        id=str(entry["id"]),
        label=str(entry.get("label") or entry["id"]),
        selector=selector,
        source=source,
        show_file_count=bool(entry.get("show_file_count", True)),
    )
