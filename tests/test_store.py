import json

import pytest

from conftest import TEST_FAMILY, make_descriptor
from model_depot.catalog.registry import ArtifactCatalog, FamilySpec
from model_depot.core.store import ArtifactStore
from model_depot.exceptions import UnknownArtifactError
from model_depot.models.artifact import DownloadStatus, ErrorKind
from model_depot.models.config import StoreConfig
from model_depot.network.policy import NetworkClass

pytestmark = pytest.mark.usefixtures("shared_pool")

LANGUAGE = FamilySpec("language", "llama_models", "llama_models_metadata.json")


@pytest.fixture
def catalogs(file_server):
    return {
        "speech": ArtifactCatalog(
            TEST_FAMILY, [make_descriptor("tiny", file_server.url("/files/tiny.bin"))]
        ),
        "language": ArtifactCatalog(
            LANGUAGE,
            [make_descriptor("qwen", file_server.url("/files/qwen.gguf"), family="language")],
        ),
    }


@pytest.fixture
def config(tmp_path):
    return StoreConfig(storage_root=str(tmp_path / "store"), json_logs=True)


@pytest.mark.asyncio
async def test_families_are_independent(config, catalogs, classifier, tmp_path):
    async with ArtifactStore(config, catalogs, classifier=classifier) as store:
        assert store.family_of("qwen") == "language"

        state = await store.manager_for("qwen").download("qwen")

        assert state.status is DownloadStatus.INSTALLED
        assert store.get_current_artifact_path("language") == (
            tmp_path / "store" / "llama_models" / "qwen.bin"
        )
        assert store.get_current_artifact_path("speech") is None
        assert store.state("tiny").status is DownloadStatus.NOT_INSTALLED

    record = json.loads((tmp_path / "store" / "llama_models_metadata.json").read_text())
    assert record["currentModel"] == "qwen"
    assert not (tmp_path / "store" / "models_metadata.json").exists()


@pytest.mark.asyncio
async def test_subscribe_covers_every_family(config, catalogs, classifier):
    async with ArtifactStore(config, catalogs, classifier=classifier) as store:
        changes = []
        unsubscribe = store.subscribe(changes.append)

        await store.manager("speech").download("tiny")
        await store.manager("language").download("qwen")
        unsubscribe()

    assert {change.family for change in changes} == {"speech", "language"}
    assert changes[-1].status is DownloadStatus.INSTALLED


@pytest.mark.asyncio
async def test_events_are_written_as_json_lines(config, catalogs, classifier, tmp_path):
    async with ArtifactStore(config, catalogs, classifier=classifier) as store:
        await store.manager("speech").download("tiny")

    log_files = list((tmp_path / "store" / "logs").glob("*.jsonl"))
    assert len(log_files) == 1
    events = [json.loads(line) for line in log_files[0].read_text().splitlines()]
    names = [e["event"] for e in events]
    assert names.index("transfer_started") < names.index("transfer_completed")
    completed = events[names.index("transfer_completed")]
    assert completed["family"] == "speech"
    assert completed["key"] == "tiny"
    assert "session_id" in completed


@pytest.mark.asyncio
async def test_unknown_lookups_raise(config, catalogs, classifier):
    store = ArtifactStore(config, catalogs, classifier=classifier)
    try:
        with pytest.raises(UnknownArtifactError):
            store.family_of("nope")
        with pytest.raises(UnknownArtifactError):
            store.manager("vision")
        with pytest.raises(UnknownArtifactError):
            store.get_current_artifact_path("vision")
    finally:
        await store.close()


def test_key_in_two_families_is_rejected(config, classifier):
    catalogs = {
        "speech": ArtifactCatalog(TEST_FAMILY, [make_descriptor("x", "http://a/x")]),
        "language": ArtifactCatalog(
            LANGUAGE, [make_descriptor("x", "http://a/x", family="language")]
        ),
    }

    with pytest.raises(ValueError, match="both"):
        ArtifactStore(config.model_copy(update={"json_logs": False}), catalogs, classifier=classifier)


@pytest.mark.asyncio
async def test_family_threshold_gates_metered_downloads(config, file_server, classifier):
    classifier.network_class = NetworkClass.METERED
    language = FamilySpec(
        "language", "llama_models", "llama_models_metadata.json", metered_threshold_mb=300
    )
    catalogs = {
        "speech": ArtifactCatalog(
            TEST_FAMILY,
            [make_descriptor("base", file_server.url("/files/base.bin"), size_mb=200)],
        ),
        "language": ArtifactCatalog(
            language,
            [
                make_descriptor(
                    "qwen", file_server.url("/files/qwen.gguf"), size_mb=200, family="language"
                )
            ],
        ),
    }

    async with ArtifactStore(config, catalogs, classifier=classifier) as store:
        speech = await store.manager("speech").download("base")
        language_state = await store.manager("language").download("qwen")

    assert speech.last_error.kind is ErrorKind.POLICY_BLOCKED
    assert language_state.status is DownloadStatus.INSTALLED
