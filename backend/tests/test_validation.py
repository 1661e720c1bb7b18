from rda.completion import CompletionResult
from rda.config import Settings
from rda.schemas import NormalizationOutput, NormalizedFieldResult, SectionNormalization
from rda.sections import REQUIRED_FIELDS, SECTION_ORDER
from rda.validation import Validator, compute_score, is_filled

REQUIRED_VALUES: dict[str, object] = {
    "PROJETO_NOME": "Atlas",
    "ANO_BASE": "2025",
    "COMPETENCIA": "2025-03",
    "COORDENADOR_TECNICO": "Bruno Lima",
    "ATIVIDADES": [{"NOME_ATIVIDADE": "Login"}],
    "RESULTADOS_ALCANCADOS": "Entregas concluidas.",
}


def _normalization(values: dict[str, object]) -> NormalizationOutput:
    return NormalizationOutput(
        sections=[
            SectionNormalization(
                section_name="rda",
                fields=[
                    NormalizedFieldResult(field_name=name, value=value, normalized_value=value)
                    for name, value in values.items()
                ],
            )
        ]
    )


def test_is_filled() -> None:
    assert not is_filled(None)
    assert not is_filled("   ")
    assert not is_filled([])
    assert is_filled("x")
    assert is_filled([{}])
    assert is_filled({})
    assert is_filled(0)


def test_compute_score_is_clamped_and_zero_without_fields() -> None:
    assert compute_score(0, 0, 0) == 0.0
    assert compute_score(2, 5, 4) == 0.0
    assert compute_score(4, 0, 4) == 1.0


def test_score_exactly_at_threshold_is_approved() -> None:
    values = dict(REQUIRED_VALUES)
    values.update({f"EXTRA_{index}": "" for index in range(4)})

    report = Validator(Settings()).validate(_normalization(values))

    assert report.total_fields == 10
    assert report.filled_fields == 6
    assert report.empty_fields == 4
    assert report.overall_score == 0.6
    assert report.approved
    assert report.retry_recommendations is None


def test_score_just_below_threshold_is_not_approved() -> None:
    values = dict(REQUIRED_VALUES)
    values.update({f"FILLED_{index}": "ok" for index in range(53)})
    values.update({f"EMPTY_{index}": None for index in range(41)})

    report = Validator(Settings()).validate(_normalization(values))

    assert report.total_fields == 100
    assert report.filled_fields == 59
    assert report.overall_score == 0.59
    assert not report.approved
    assert not report.retryable
    assert report.retry_recommendations is not None
    assert report.retry_recommendations.sections == list(SECTION_ORDER)


def test_missing_required_field_blocks_approval_and_names_its_section() -> None:
    values = dict(REQUIRED_VALUES)
    values["ATIVIDADES"] = []

    report = Validator(Settings()).validate(_normalization(values))

    errors = [issue for issue in report.issues if issue.severity == "error"]
    assert [issue.field for issue in errors] == ["ATIVIDADES"]
    assert errors[0].type == "missing"
    assert report.overall_score == 4 / 6
    assert not report.approved
    assert report.retryable
    assert report.retry_recommendations.sections == ["atividades"]


def test_unnamed_activity_is_a_warning_only() -> None:
    values = dict(REQUIRED_VALUES)
    values["ATIVIDADES"] = [{"NOME_ATIVIDADE": "Login"}, {"NOME_ATIVIDADE": ""}]

    report = Validator(Settings()).validate(_normalization(values))

    assert [(issue.field, issue.severity) for issue in report.issues] == [
        ("ATIVIDADES[1].NOME_ATIVIDADE", "warning")
    ]
    assert report.issues[0].auto_fixable
    assert report.approved
    assert report.overall_score == 1.0


def test_empty_normalization_scores_zero() -> None:
    report = Validator(Settings()).validate(NormalizationOutput())

    assert report.total_fields == 0
    assert report.overall_score == 0.0
    assert len([issue for issue in report.issues if issue.type == "missing"]) == len(REQUIRED_FIELDS)
    assert not report.approved


class RaisingCompletion:
    def __init__(self) -> None:
        self.calls = 0

    def complete(self, prompt: str, **kwargs: object) -> CompletionResult:
        self.calls += 1
        raise RuntimeError("bedrock throttled")


def test_failing_commentary_leaves_the_verdict_unchanged() -> None:
    values = dict(REQUIRED_VALUES)
    values["COORDENADOR_TECNICO"] = ""
    baseline = Validator(Settings()).validate(_normalization(values))
    completion = RaisingCompletion()

    report = Validator(Settings(llm_enrichment_enabled=True), completion).validate(_normalization(values))

    assert completion.calls == 1
    assert report.commentary is None
    assert (report.approved, report.overall_score, report.retryable) == (
        baseline.approved,
        baseline.overall_score,
        baseline.retryable,
    )
    assert [issue.field for issue in report.issues] == [issue.field for issue in baseline.issues]
