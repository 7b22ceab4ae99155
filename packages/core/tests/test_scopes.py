"""Tests for scope resolution and file selection."""

import pytest

from diffpanel_core.errors import ConfigError, UnknownSelectionError
from diffpanel_core.models import FileListContext
from diffpanel_core.scopes import (
    DEFAULT_SCOPES,
    CustomScope,
    available_scopes,
    file_count,
    get_files,
    list_scopes,
    resolve_scope,
    scope_from_config,
    scope_options,
)

CONTEXT = FileListContext(
    staged_files=["api/users.py"],
    all_files=["api/users.py", "api/orders.py", "web/app.ts", "web/app.test.ts"],
)


def _config(*scopes):
    return {"scopes": list(scopes)}


class TestResolveScope:
    def test_none_when_not_specified(self):
        assert resolve_scope(_config(), None) is None
        assert resolve_scope(_config(), "") is None

    def test_built_ins(self):
        assert resolve_scope(_config(), "all") is DEFAULT_SCOPES["all"]
        assert resolve_scope(_config(), "staged") is DEFAULT_SCOPES["staged"]

    def test_custom_scope_by_id(self):
        web = scope_from_config({"id": "web", "include": ["web/**"]})
        assert resolve_scope(_config(web), "web") is web

    def test_custom_scope_shadows_built_in(self):
        custom_all = CustomScope(id="all", label="Everything but docs", selector=lambda ctx: [])
        assert resolve_scope(_config(custom_all), "all") is custom_all

    def test_unknown_scope_raises_with_options(self):
        web = scope_from_config({"id": "web"})
        with pytest.raises(UnknownSelectionError) as exc:
            resolve_scope(_config(web), "nope")
        assert exc.value.kind == "scope"
        assert exc.value.available == ["all", "staged", "web"]
        assert "Invalid scope: nope" in str(exc.value)


class TestGetFiles:
    def test_all(self):
        assert get_files(DEFAULT_SCOPES["all"], CONTEXT) == list(CONTEXT.all_files)

    def test_staged(self):
        assert get_files(DEFAULT_SCOPES["staged"], CONTEXT) == ["api/users.py"]

    def test_custom_selector_is_applied_to_snapshot(self):
        scope = CustomScope(id="py", label="Python", selector=lambda ctx: [f for f in ctx.all_files if f.endswith(".py")])
        assert get_files(scope, CONTEXT) == ["api/users.py", "api/orders.py"]

    def test_yaml_scope_include_exclude(self):
        scope = scope_from_config({"id": "web", "include": ["web/**"], "exclude": ["**/*.test.ts"]})
        assert get_files(scope, CONTEXT) == ["web/app.ts"]

    def test_yaml_scope_over_staged_source(self):
        scope = scope_from_config({"id": "staged-api", "source": "staged", "include": ["api/**"]})
        assert scope.source == "staged"
        assert get_files(scope, CONTEXT) == ["api/users.py"]


class TestScopeFromConfig:
    def test_label_defaults_to_id(self):
        assert scope_from_config({"id": "web"}).label == "web"

    def test_missing_id(self):
        with pytest.raises(ConfigError):
            scope_from_config({"label": "No id"})

    def test_bad_source(self):
        with pytest.raises(ConfigError):
            scope_from_config({"id": "x", "source": "unstaged"})


class TestListing:
    def test_available_scopes_order(self):
        config = _config(scope_from_config({"id": "web"}), scope_from_config({"id": "all"}))
        assert available_scopes(config) == ["all", "staged", "web"]

    def test_list_scopes_prefers_custom(self):
        custom_all = scope_from_config({"id": "all", "label": "Custom all"})
        scopes = list_scopes(_config(custom_all))
        assert scopes[0] is custom_all
        assert scopes[1] is DEFAULT_SCOPES["staged"]

    def test_scope_options_with_counts(self):
        options = scope_options(list_scopes(_config()), CONTEXT)
        assert options == [("all", "All changes (4 files)"), ("staged", "Staged changes (1 files)")]

    def test_broken_selector_has_no_count(self):
        def boom(ctx):
            raise RuntimeError("selector bug")

        scope = CustomScope(id="broken", label="Broken", selector=boom)
        assert file_count(scope, CONTEXT) is None
        assert scope_options([scope], CONTEXT) == [("broken", "Broken")]

    def test_count_can_be_hidden(self):
        scope = scope_from_config({"id": "web", "show_file_count": False})
        assert file_count(scope, CONTEXT) is None
