import json
from pathlib import Path

from rda import db
from rda.config import settings
from rda.extraction import FieldExtractor
from rda.normalization import Normalizer
from rda.orchestrator import VALIDATION_BLOCKED_MESSAGE, GenerationOrchestrator
from rda.schemas import FieldOverride, GenerationRecord
from rda.sections import PIPELINE_CHECKPOINTS


def _use_tmp_storage(tmp_path: Path) -> None:
    settings.database_url = f"sqlite:///{tmp_path}/test.db"
    settings.storage_root = str(tmp_path / "output")
    settings.storage_backend = "local"
    settings.llm_enrichment_enabled = False
    db.init_db()


def _context_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "project_id": "proj-1",
        "period_key": "2025-03",
        "generation_id": "gen-1",
        "template_id": "tpl-rda",
        "template_path": "templates/rda.docx",
        "project_context": {
            "project_name": "Plataforma   Atlas",
            "project_scope": "Modernizacao do faturamento",
            "team_members": [{"name": "Bruno Lima", "role": "Coordenador Tecnico", "area": "Gestao"}],
        },
        "azure_devops": {"organization": "https://dev.azure.com/acme", "project": "Atlas", "team_name": "Time A"},
        "work_items": [
            {
                "id": "wi-1",
                "work_item_id": 101,
                "title": "Implementar login",
                "state": "Closed",
                "assigned_to": "Ana Souza",
                "changed_date": "2025-03-10T12:00:00Z",
            }
        ],
    }
    payload.update(overrides)
    return payload


class CountingExtractor(FieldExtractor):
    def __init__(self) -> None:
        super().__init__(settings)
        self.calls = 0

    def extract(self, context):
        self.calls += 1
        return super().extract(context)


class ExplodingNormalizer(Normalizer):
    def __init__(self) -> None:
        super().__init__(settings)

    def normalize(self, extraction, guide_text):
        raise RuntimeError("normalizer exploded")


def _track_saves(monkeypatch) -> list[GenerationRecord]:
    saved: list[GenerationRecord] = []
    original = db.save_generation

    def tracking_save(record: GenerationRecord) -> GenerationRecord:
        result = original(record)
        saved.append(result)
        return result

    monkeypatch.setattr(db, "save_generation", tracking_save)
    return saved


def test_run_walks_every_checkpoint_and_completes(tmp_path: Path, monkeypatch) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())
    saved = _track_saves(monkeypatch)

    result = GenerationOrchestrator(settings).run(record.id)

    assert [(item.current_step, item.progress) for item in saved] == list(PIPELINE_CHECKPOINTS)
    assert [item.version for item in saved] == list(range(1, len(PIPELINE_CHECKPOINTS) + 1))
    assert result.status == "completed"
    assert result.progress == 100
    assert result.error_message is None

    stored = db.require_generation(record.id)
    assert stored.version == len(PIPELINE_CHECKPOINTS)
    assert set(stored.partial_results) == {
        "context",
        "extraction",
        "normalization",
        "validation_report",
        "placeholder_map",
        "metadata",
    }
    assert stored.partial_results["placeholder_map"]["PROJETO_NOME"] == "Plataforma Atlas"
    assert stored.partial_results["metadata"]["template_id"] == "tpl-rda"
    assert stored.partial_results["metadata"]["validation_report"]["approved"] is True

    manifest = json.loads(Path(stored.output_file_path).read_text(encoding="utf-8"))
    assert manifest["generation_id"] == record.id
    assert manifest["template_path"] == "templates/rda.docx"
    assert manifest["placeholders"]["ATIVIDADES"][0]["NOME_ATIVIDADE"] == "Implementar login"


def test_stage_failure_marks_generation_failed_and_keeps_earlier_slices(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())

    result = GenerationOrchestrator(settings, normalizer=ExplodingNormalizer()).run(record.id)

    assert result.status == "failed"
    assert result.current_step == "failed"
    assert result.progress == 100
    assert result.error_message == "normalizer exploded"
    stored = db.require_generation(record.id)
    assert "extraction" in stored.partial_results
    assert "normalization" not in stored.partial_results
    assert stored.output_file_path is None


def test_validation_block_fails_with_fixed_message(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload(work_items=[]))

    result = GenerationOrchestrator(settings).run(record.id)

    assert result.status == "failed"
    assert result.current_step == "validation_failed"
    assert result.progress == 100
    assert result.error_message == VALIDATION_BLOCKED_MESSAGE
    assert result.partial_results["validation_report"]["approved"] is False
    assert "placeholder_map" not in result.partial_results
    assert result.output_file_path is None


def test_malformed_context_fails_the_generation(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", {"project_id": "proj-1"})

    result = GenerationOrchestrator(settings).run(record.id)

    assert result.status == "failed"
    assert "malformed" in result.error_message


def test_cancelled_generation_is_not_run(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())
    orchestrator = GenerationOrchestrator(settings)

    cancelled = orchestrator.cancel(record.id)
    result = orchestrator.run(record.id)

    assert cancelled.status == "cancelled"
    assert cancelled.current_step == "cancelled"
    assert result.status == "cancelled"
    assert result.version == cancelled.version


def test_cancel_leaves_terminal_generation_unchanged(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())
    orchestrator = GenerationOrchestrator(settings)
    completed = orchestrator.run(record.id)

    after = orchestrator.cancel(record.id)

    assert after.status == "completed"
    assert after.version == completed.version


def test_rerun_reuses_stored_extraction_unless_resume_is_disabled(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())
    extractor = CountingExtractor()
    orchestrator = GenerationOrchestrator(settings, extractor=extractor)

    orchestrator.run(record.id)
    assert extractor.calls == 1

    resumed = orchestrator.run(record.id)
    assert extractor.calls == 1
    assert resumed.status == "completed"

    orchestrator.run(record.id, resume=False)
    assert extractor.calls == 2


def test_stored_overrides_are_applied_when_formatting(tmp_path: Path) -> None:
    _use_tmp_storage(tmp_path)
    record = db.create_generation("proj-1", "tpl-rda", _context_payload())
    orchestrator = GenerationOrchestrator(settings)
    orchestrator.run(record.id)
    db.save_overrides(
        record.id,
        {
            "PROJETO_NOME": FieldOverride(
                field_name="PROJETO_NOME",
                section_name="dados_projeto",
                original_value="Plataforma   Atlas",
                new_value="Acme Corp",
                edited_at="2025-04-01T10:00:00+00:00",
            )
        },
    )

    result = orchestrator.run(record.id)

    assert result.status == "completed"
    assert result.partial_results["placeholder_map"]["PROJETO_NOME"] == "Acme Corp"
    assert result.overrides["PROJETO_NOME"].new_value == "Acme Corp"
