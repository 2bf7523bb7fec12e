"""Tests for config load/save and the per-VM Configuration."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from crossvm.config import ActionConfig, Configuration, dump_toml, load, save


def test_dump_load_roundtrip(tmp_path: Path) -> None:
    cfg = ActionConfig()
    cfg.vm.operating_system = 'openbsd'
    cfg.vm.version = '7.4'
    cfg.vm.cpu_count = 4
    cfg.run.command = 'echo "hi" && make'
    cfg.run.shutdown_vm = False
    cfg.paths.image = '/tmp/\\weird.qcow2'
    cfg.verbosity = 2
    fpath = tmp_path / '.crossvm.toml'
    save(fpath, cfg)

    cfg2 = load(fpath)
    assert cfg2.vm.operating_system == 'openbsd'
    assert cfg2.vm.version == '7.4'
    assert cfg2.vm.cpu_count == 4
    assert cfg2.run.command == cfg.run.command
    assert cfg2.run.shutdown_vm is False
    assert cfg2.paths.image == cfg.paths.image
    assert cfg2.verbosity == 2


def test_dump_toml_verbosity_default_omitted() -> None:
    text = dump_toml(ActionConfig())
    assert 'verbosity =' not in text
    assert '[vm]' in text


def test_load_ignores_unknown_keys(tmp_path: Path) -> None:
    fpath = tmp_path / 'cfg.toml'
    fpath.write_text('[vm]\nversion = "9.3"\nbogus = 1\n[other]\nx = 1\n', encoding='utf-8')
    cfg = load(fpath)
    assert cfg.vm.version == '9.3'
    assert not hasattr(cfg.vm, 'bogus')


def test_expanded_paths_expands_env(monkeypatch) -> None:
    monkeypatch.setenv('CROSSVM_TEST_DIR', '/tmp/crossvm-x')
    cfg = ActionConfig()
    cfg.paths.image = '$CROSSVM_TEST_DIR/img.qcow2'
    cfg.paths.temp_dir = '$CROSSVM_TEST_DIR/tmp'
    out = cfg.expanded_paths()
    assert out.paths.image == '/tmp/crossvm-x/img.qcow2'
    assert out.paths.temp_dir == '/tmp/crossvm-x/tmp'
    assert out.paths.ssh_identity_file == ''


def test_configuration_is_frozen() -> None:
    cfg = Configuration(
        disk_image=Path('/d'), resources_disk_image=Path('/r'), ssh_port=22
    )
    assert cfg.user == 'runner'
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.memory = '1G'


def test_verbosity_written_before_first_table(tmp_path: Path) -> None:
    cfg = ActionConfig()
    cfg.verbosity = 3
    text = dump_toml(cfg)
    assert text.index('verbosity = 3') < text.index('[vm]')
    fpath = tmp_path / 'cfg.toml'
    save(fpath, cfg)
    loaded = load(fpath)
    assert loaded.verbosity == 3
    assert not hasattr(loaded.run, 'verbosity')
