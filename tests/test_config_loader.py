from __future__ import annotations

from pathlib import Path

import pytest

from relaybuild.config.loader import (
    CONFIG_PATHS_ENV,
    discover_overlay_paths,
    load_client_config,
    load_config_dicts,
    load_default_config_dict,
)
from relaybuild.core.errors import ConfigError
from relaybuild.runtime.dispatcher import DispatchSettings


def test_embedded_default_config_validates() -> None:
    raw = load_default_config_dict()
    assert raw["config_version"] == 1

    cfg, sources = load_config_dicts([("embedded_default", raw)])

    assert cfg.workspace.markers == ["WORKSPACE", "WORKSPACE.yaml"]
    assert cfg.workspace.rc_file_name == ".relaybuildrc"
    assert cfg.server.module == "relaybuild.runtime.server"
    assert cfg.server.engine is None
    assert sources["session.lock_poll_interval_ms"] == "embedded_default"


def test_overlays_merge_in_order_with_leaf_sources(tmp_path: Path) -> None:
    home = tmp_path / "home"
    user_cfg = home / ".config" / "relaybuild" / "client.yaml"
    user_cfg.parent.mkdir(parents=True)
    user_cfg.write_text("session:\n  lock_poll_interval_ms: 20\n  shutdown_wait_ms: 10\n", encoding="utf-8")
    env_cfg = tmp_path / "ci.yaml"
    env_cfg.write_text("session:\n  lock_poll_interval_ms: 5\nworkspace:\n  markers: [MODULE.relay]\n", encoding="utf-8")

    loaded = load_client_config(env={CONFIG_PATHS_ENV: f" {env_cfg} ; "}, home=home)

    assert loaded.overlay_paths == (user_cfg.resolve(), env_cfg.resolve())
    assert loaded.config.session.lock_poll_interval_ms == 5
    assert loaded.config.session.shutdown_wait_ms == 10
    assert loaded.config.session.probe_retry_delay_ms == 250
    assert loaded.config.workspace.markers == ["MODULE.relay"]
    assert loaded.sources["session.lock_poll_interval_ms"] == f"overlay:{env_cfg.resolve()}"
    assert loaded.sources["session.shutdown_wait_ms"] == f"overlay:{user_cfg.resolve()}"


def test_discover_overlay_paths_dedupes(tmp_path: Path) -> None:
    p = tmp_path / "a.yaml"
    p.write_text("{}\n", encoding="utf-8")

    paths = discover_overlay_paths(env={CONFIG_PATHS_ENV: f"{p},{p}"}, home=tmp_path / "nohome")

    assert paths == [p.resolve()]


def test_missing_overlay_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as ei:
        load_client_config(env={CONFIG_PATHS_ENV: str(tmp_path / "missing.yaml")}, home=tmp_path)
    assert ei.value.exit_code == 2


def test_overlay_root_must_be_mapping(tmp_path: Path) -> None:
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_client_config(env={CONFIG_PATHS_ENV: str(p)}, home=tmp_path)


def test_undecodable_overlay_is_a_config_error(tmp_path: Path) -> None:
    p = tmp_path / "latin1.yaml"
    p.write_bytes(b"session:\n  shutdown_wait_ms: 10 # \xe9\xff\n")

    with pytest.raises(ConfigError) as ei:
        load_client_config(env={CONFIG_PATHS_ENV: str(p)}, home=tmp_path)

    assert ei.value.exit_code == 2
    assert ei.value.details["path"] == str(p.resolve())


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("workspace:\n  markers: []\n", encoding="utf-8")
    with pytest.raises(ConfigError) as ei:
        load_client_config(env={CONFIG_PATHS_ENV: str(p)}, home=tmp_path)
    assert "markers" in ei.value.details["reason"]


def test_dispatch_settings_from_config() -> None:
    cfg, _ = load_config_dicts(
        [
            ("embedded_default", load_default_config_dict()),
            ("test", {"session": {"lock_poll_interval_ms": 50}, "server": {"engine": "pkg.mod:make"}}),
        ]
    )

    settings = DispatchSettings.from_config(cfg)

    assert settings.lock_poll_interval == pytest.approx(0.05)
    assert settings.probe_retry_delay == pytest.approx(0.25)
    assert settings.shutdown_wait == pytest.approx(5.0)
    assert settings.server_engine == "pkg.mod:make"
