from rda.completion import CompletionResult
from rda.config import Settings
from rda.normalization import NORMALIZATION_NOTE, Normalizer, normalize_value
from rda.schemas import Evidence, ExtractionOutput, FieldResult, SectionExtraction


def _evidence() -> list[Evidence]:
    return [Evidence(source_type="Document", source_id="doc-1", source_name="Contexto", location="p1")]


def _extraction() -> ExtractionOutput:
    return ExtractionOutput(
        sections=[
            SectionExtraction(
                section_name="rda",
                fields=[
                    FieldResult(
                        field_name="PROJETO_NOME",
                        value="  Plataforma \n  Atlas ",
                        evidence=_evidence(),
                        confidence=0.9,
                        status="filled",
                    ),
                    FieldResult(
                        field_name="ATIVIDADES",
                        value=[{"NOME_ATIVIDADE": "Ajustar\t relatorio", "RESPONSAVEIS": [{"NOME_RESPONSAVEL": " Ana "}]}],
                        evidence=_evidence(),
                        confidence=0.8,
                        status="filled",
                    ),
                    FieldResult(field_name="ANO_BASE", value=2025),
                ],
            )
        ]
    )


def test_normalize_value_collapses_whitespace_recursively() -> None:
    assert normalize_value("  a \n\t b  ") == "a b"
    assert normalize_value(["x  y", {"k": " v  w "}]) == ["x y", {"k": "v w"}]
    assert normalize_value(7) == 7
    assert normalize_value(None) is None


def test_normalize_keeps_original_and_writes_normalized_value() -> None:
    output = Normalizer(Settings()).normalize(_extraction(), "guia")
    fields = {field.field_name: field for field in output.all_fields()}

    project = fields["PROJETO_NOME"]
    assert project.original_value == "  Plataforma \n  Atlas "
    assert project.normalized_value == "Plataforma Atlas"
    assert project.value == "Plataforma Atlas"
    assert project.normalization_notes == NORMALIZATION_NOTE
    assert project.confidence == 0.9
    assert project.evidence[0].source_id == "doc-1"

    activity = fields["ATIVIDADES"].normalized_value[0]
    assert activity["NOME_ATIVIDADE"] == "Ajustar relatorio"
    assert activity["RESPONSAVEIS"][0]["NOME_RESPONSAVEL"] == "Ana"
    assert fields["ANO_BASE"].normalized_value == 2025

    assert [section.section_name for section in output.sections] == ["rda"]
    assert output.sections[0].duration >= 1
    assert output.total_tokens.total == 0


def test_normalize_section_only_touches_that_section_fields() -> None:
    output = Normalizer(Settings()).normalize_section(_extraction(), "guia", "atividades")
    assert [field.field_name for field in output.all_fields()] == ["ATIVIDADES"]


class RaisingCompletion:
    def __init__(self) -> None:
        self.calls = 0

    def complete(self, prompt: str, **kwargs: object) -> CompletionResult:
        self.calls += 1
        raise RuntimeError("bedrock throttled")


def test_failing_enrichment_keeps_deterministic_normalization() -> None:
    baseline = Normalizer(Settings()).normalize(_extraction(), "guia")
    completion = RaisingCompletion()

    output = Normalizer(Settings(llm_enrichment_enabled=True), completion).normalize(_extraction(), "guia")

    assert completion.calls == 1
    compared = {"field_name", "value", "normalized_value", "original_value"}
    assert [field.model_dump(include=compared) for field in output.all_fields()] == [
        field.model_dump(include=compared) for field in baseline.all_fields()
    ]
    assert output.total_tokens.total == 0
