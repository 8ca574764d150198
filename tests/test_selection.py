import json

import pytest

from conftest import FakeCatalogFetcher
from visionm.catalog.models import Catalog, CatalogEntry
from visionm.jobs.errors import PolicyRejectedError, SelectionValidationError
from visionm.jobs.models import InferenceMode, JobFile, JobKind
from visionm.selection.context import SelectionContext
from visionm.storage.recovery_store import MemoryBackend, RecoveryStore


def make_context(kind=JobKind.INFERENCE, idle=True):
    backend = MemoryBackend()
    store = RecoveryStore(backend, "prediction" if kind == JobKind.INFERENCE else "training")
    context = SelectionContext(kind, FakeCatalogFetcher(), store, is_idle=lambda: idle)
    return context, backend


def catalog(project_id, datasets=(), models=(), datasets_known=True, models_known=True):
    return Catalog(
        project_id=project_id,
        datasets=[CatalogEntry(id=d) for d in datasets],
        models=[CatalogEntry(id=m) for m in models],
        datasets_known=datasets_known,
        models_known=models_known,
    )


async def selected_context(**kwargs):
    context, backend = make_context(**kwargs)
    await context.load_projects("C1")
    await context.set_project("P1")
    context.set_dataset("D1")
    context.set_model("M1")
    return context, backend


@pytest.mark.asyncio
async def test_reconcile_clears_missing_dataset_and_keeps_model():
    context, backend = await selected_context()

    cleared = context.reconcile(catalog("P1", datasets=["D2"], models=["M1"]))

    assert cleared == ["dataset_id"]
    assert context.dataset_id is None
    assert context.model_id == "M1"
    assert backend.get("prediction_datasetId") is None
    assert json.loads(backend.get("prediction_modelId")) == "M1"


@pytest.mark.asyncio
async def test_reconcile_keeps_selection_when_list_unknown():
    context, _ = await selected_context()

    cleared = context.reconcile(catalog("P1", datasets_known=False, models_known=False))

    assert cleared == []
    assert context.dataset_id == "D1"
    assert context.model_id == "M1"


@pytest.mark.asyncio
async def test_reconcile_ignores_catalog_of_other_project():
    context, _ = await selected_context()

    assert context.reconcile(catalog("P2", datasets=["D9"], models=["M9"])) == []
    assert context.dataset_id == "D1"


@pytest.mark.asyncio
async def test_project_change_clears_dependents():
    context, backend = await selected_context()

    await context.set_project("P2")

    assert context.dataset_id is None
    assert context.model_id is None
    assert backend.get("prediction_datasetId") is None
    assert json.loads(backend.get("prediction_projectId")) == "P2"


@pytest.mark.asyncio
async def test_unknown_project_is_rejected():
    context, _ = make_context()
    await context.load_projects("C1")

    with pytest.raises(SelectionValidationError):
        await context.set_project("P404")


@pytest.mark.asyncio
async def test_dataset_must_exist_in_known_catalog():
    context, _ = await selected_context()

    with pytest.raises(SelectionValidationError):
        context.set_dataset("D9")
    assert context.dataset_id == "D1"


@pytest.mark.asyncio
async def test_changes_rejected_while_busy():
    context, _ = make_context(idle=False)

    with pytest.raises(PolicyRejectedError):
        context.set_model("M1")


def test_confidence_is_clamped():
    context, backend = make_context()

    assert context.set_confidence(1.7) == 1.0
    assert context.set_confidence(-0.2) == 0.0
    assert json.loads(backend.get("prediction_confidenceThreshold")) == 0.0


def test_upload_files_filtered_by_extension_and_deduplicated():
    context, _ = make_context()

    rejected = context.add_files([
        JobFile(filename="a.JPG", content=b"1"),
        JobFile(filename="clip.mov", content=b"2"),
        JobFile(filename="notes.txt", content=b"3"),
        JobFile(filename="a.JPG", content=b"4"),
    ])

    assert rejected == ["notes.txt"]
    assert [f.filename for f in context.files] == ["a.JPG", "clip.mov"]
    context.remove_file("a.JPG")
    assert [f.filename for f in context.files] == ["clip.mov"]


@pytest.mark.asyncio
async def test_custom_mode_payload_needs_files():
    context, _ = await selected_context()
    context.set_inference_mode("custom")

    with pytest.raises(SelectionValidationError, match="at least one image or video"):
        context.build_payload()

    context.add_files([JobFile(filename="a.png", content=b"1")])
    payload = context.build_payload()
    assert payload.input_mode == InferenceMode.CUSTOM
    assert payload.dataset_id is None


def test_unknown_inference_mode_is_rejected():
    context, _ = make_context()
    with pytest.raises(SelectionValidationError):
        context.set_inference_mode("webcam")


@pytest.mark.asyncio
async def test_training_hyperparameters_are_range_checked():
    context, backend = await selected_context(kind=JobKind.TRAINING)
    context.set_use_defaults(False)

    context.set_hyperparameters({"epochs": 20, "batchSize": 8})
    with pytest.raises(SelectionValidationError, match="batchSize|batch_size"):
        context.set_hyperparameters({"batchSize": 0})

    payload = context.build_payload()
    assert payload.hyperparameters["epochs"] == 20
    assert payload.hyperparameters["batchSize"] == 8
    assert json.loads(backend.get("training_hyperparameters"))["epochs"] == 20


@pytest.mark.asyncio
async def test_model_type_loads_defaults():
    context, _ = make_context(kind=JobKind.TRAINING)

    defaults = await context.set_model_type("EfficientNet")

    assert defaults.epochs == 50
    assert context.hyperparameters.epochs == 50
    with pytest.raises(SelectionValidationError):
        await context.set_model_type("ResNet")


@pytest.mark.asyncio
async def test_project_required_before_start():
    context, _ = make_context()
    with pytest.raises(SelectionValidationError, match="select a project"):
        context.build_payload()
