from __future__ import annotations

import pytest

from conftest import FakeAdapter
from stack_backup.errors import ArtifactNotFoundError, ConfigurationError, UnsupportedCombinationError
from stack_backup.pipeline import RestorePipeline, is_confirmed
from stack_backup.targets import parse_target

SNAPSHOT = "00000001deadbeef"


class Answers:
    def __init__(self, answer):
        self.answer = answer
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        return self.answer


def _stage(fake_store, engine, target, unit, timestamp, payload, ext=".sql.gz"):
    directory = fake_store.archive / SNAPSHOT / "staging" / engine / target / unit
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{target}_{unit}_{timestamp}{ext}"
    path.write_bytes(payload)
    return path


@pytest.fixture
def adapter():
    return FakeAdapter("postgres")


@pytest.fixture
def seeded(registry, fake_store):
    registry.add_target(parse_target("postgres", {"name": "main", "container": "pg-main"}))
    registry.add_target(parse_target("postgres", {"name": "main_app", "container": "pg-other"}))
    _stage(fake_store, "postgres", "main", "app", "20240501_020000", b"older")
    _stage(fake_store, "postgres", "main", "app", "20240502_020000", b"newer")
    _stage(fake_store, "postgres", "main", "auth", "20240503_020000", b"other unit")
    return fake_store


def _pipeline(config, registry, store, adapter, answer):
    confirm = Answers(answer)
    return RestorePipeline(config, registry, store, {"postgres": adapter}, confirm=confirm), confirm


def test_confirmed_restore_uses_newest_artifact(config, registry, seeded, adapter):
    pipeline, confirm = _pipeline(config, registry, seeded, adapter, "yes")

    result = pipeline.restore_target("postgres", SNAPSHOT, "main", "app")

    assert result.restored
    assert result.artifact == "main_app_20240502_020000.sql.gz"
    assert adapter.restored == [("main", "app", b"newer")]
    assert "OVERWRITE 'app'" in confirm.prompts[0]
    restore_call = seeded.calls[0]
    assert restore_call[3] == "postgres/main/app"
    assert list(config.restore_dir.iterdir()) == []


@pytest.mark.parametrize("answer", ["no", "y", "YES", "", "yes please"])
def test_anything_but_yes_cancels_without_engine_calls(config, registry, seeded, adapter, answer):
    pipeline, _ = _pipeline(config, registry, seeded, adapter, answer)

    result = pipeline.restore_target("postgres", SNAPSHOT, "main", "app")

    assert result.status == "cancelled"
    assert adapter.restored == []
    assert list(config.restore_dir.iterdir()) == []


def test_unit_defaults_to_adapter_default(config, registry, seeded, adapter):
    pipeline, _ = _pipeline(config, registry, seeded, adapter, "yes")

    result = pipeline.restore_target("pg", SNAPSHOT, "main")

    assert result.unit == "app"


def test_missing_artifact(config, registry, seeded, adapter):
    pipeline, confirm = _pipeline(config, registry, seeded, adapter, "yes")

    with pytest.raises(ArtifactNotFoundError):
        pipeline.restore_target("postgres", SNAPSHOT, "main", "billing")

    assert confirm.prompts == []
    assert adapter.restored == []
    assert list(config.restore_dir.iterdir()) == []


def test_unknown_target(config, registry, seeded, adapter):
    pipeline, _ = _pipeline(config, registry, seeded, adapter, "yes")

    with pytest.raises(ConfigurationError):
        pipeline.restore_target("postgres", SNAPSHOT, "ghost", "app")


def test_unsupported_restore_mode_fails_before_extraction(config, registry, fake_store):
    registry.add_target(parse_target("postgres", {"name": "main", "container": "pg-main"}))
    adapter = FakeAdapter("postgres")
    adapter.restore_modes = frozenset({"network"})
    pipeline, _ = _pipeline(config, registry, fake_store, adapter, "yes")

    with pytest.raises(UnsupportedCombinationError):
        pipeline.restore_target("postgres", SNAPSHOT, "main", "app")
    assert fake_store.calls == []


def test_read_only_operations(config, registry, seeded, adapter):
    pipeline, confirm = _pipeline(config, registry, seeded, adapter, "no")

    assert [snapshot.id for snapshot in pipeline.list_snapshots()] == [SNAPSHOT]
    entries = pipeline.show_snapshot(SNAPSHOT, limit=2)
    assert len(entries) == 2
    assert confirm.prompts == []


def test_restore_files_extracts_into_restore_dir(config, registry, seeded, adapter):
    pipeline, _ = _pipeline(config, registry, seeded, adapter, "no")

    destination = pipeline.restore_files(SNAPSHOT, "postgres/main/auth")

    assert destination.parent == config.restore_dir
    assert [path.name for path in destination.rglob("*.gz")] == ["main_auth_20240503_020000.sql.gz"]


def test_forget_snapshot_requires_confirmation(config, registry, seeded, adapter):
    pipeline, _ = _pipeline(config, registry, seeded, adapter, "no")
    assert pipeline.forget_snapshot(SNAPSHOT) is False
    assert ("forget_snapshot", SNAPSHOT) not in seeded.calls

    pipeline, _ = _pipeline(config, registry, seeded, adapter, "yes")
    assert pipeline.forget_snapshot(SNAPSHOT) is True
    assert ("forget_snapshot", SNAPSHOT) in seeded.calls


def test_is_confirmed_accepts_only_the_literal_word():
    assert is_confirmed("yes")
    assert is_confirmed(" yes\n")
    assert not is_confirmed("Yes")
    assert not is_confirmed(None)
