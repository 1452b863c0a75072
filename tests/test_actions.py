import pytest

from xset_listener.actions import (
    DEFAULT_ACTIONS,
    ActionSpec,
    ActionTable,
    PlatformKey,
    UnsupportedPlatformError,
    detect_platform,
)
from xset_listener.errors import EXIT_CODES, ErrorCategory, exit_code_for


@pytest.mark.parametrize("platform", [key.value for key in PlatformKey])
def test_every_supported_platform_has_both_commands(platform):
    spec = ActionTable().lookup(platform)

    assert spec.on_command
    assert spec.off_command
    assert all(part for part in spec.on_command + spec.off_command)


def test_lookup_returns_reference_commands():
    table = ActionTable()

    assert table.lookup("linux").on_command == ("xset", "dpms", "force", "on")
    assert table.lookup("linux").off_command == ("xset", "dpms", "force", "off")
    assert table.lookup(PlatformKey.DARWIN).on_command == ("caffeinate", "-u", "-t", "2")
    assert table.lookup(PlatformKey.DARWIN).off_command == ("pmset", "displaysleepnow")


def test_lookup_unknown_platform_raises_startup_error():
    with pytest.raises(UnsupportedPlatformError) as excinfo:
        ActionTable().lookup("win32")

    assert excinfo.value.platform == "win32"
    assert "win32" in str(excinfo.value)
    assert exit_code_for(excinfo.value) == EXIT_CODES[ErrorCategory.STARTUP]


def test_table_is_read_only():
    table = ActionTable()

    with pytest.raises(TypeError):
        table._actions["plan9"] = DEFAULT_ACTIONS[PlatformKey.LINUX]  # type: ignore[index]

    assert "plan9" not in table
    assert table.supported_platforms() == ["darwin", "linux"]


def test_alternate_table_limits_supported_platforms():
    table = ActionTable({PlatformKey.LINUX: ActionSpec(("true",), ("false",))})

    assert table.lookup("linux").on_command == ("true",)
    with pytest.raises(UnsupportedPlatformError):
        table.lookup("darwin")


def test_action_spec_rejects_empty_command_lines():
    with pytest.raises(ValueError):
        ActionSpec(on_command=(), off_command=("xset",))
    with pytest.raises(ValueError):
        ActionSpec(on_command=("xset",), off_command=("",))


def test_action_spec_normalises_lists_to_tuples():
    spec = ActionSpec(on_command=["xset", "on"], off_command=["xset", "off"])

    assert spec.on_command == ("xset", "on")
    assert isinstance(spec.off_command, tuple)


def test_detect_platform_prefers_override(monkeypatch):
    monkeypatch.setattr("xset_listener.actions.sys.platform", "linux")

    assert detect_platform() == "linux"
    assert detect_platform(" Darwin ") == "darwin"


def test_detect_platform_reports_raw_value_for_other_systems(monkeypatch):
    monkeypatch.setattr("xset_listener.actions.sys.platform", "win32")

    assert detect_platform() == "win32"
