from __future__ import annotations

import allure
import pytest

from taskman.orchestrator.errors import MalformedPipelineGraphError
from taskman.orchestrator.models import PipelineStep, StepType
from taskman.orchestrator.pipeline import validate_pipeline_steps
from taskman.orchestrator.templates import (
    config_from_template,
    get_pipeline_template,
    get_pipeline_templates,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Pipeline Graph"),
]


def _step(step_id: str, *depends_on: str, count: int = 1) -> PipelineStep:
    return PipelineStep(id=step_id, name=step_id.upper(), count=count, depends_on=depends_on)


def test_validate_returns_dependency_order_with_declaration_tiebreak() -> None:
    steps = [_step("d", "b", "c"), _step("b", "a"), _step("c", "a"), _step("a")]

    ordered = validate_pipeline_steps(steps)

    assert [step.id for step in ordered] == ["a", "b", "c", "d"]


@pytest.mark.parametrize(
    ("steps", "message"),
    [
        ([], "at least one step"),
        ([_step("a"), _step("a")], "Duplicate pipeline step id: a"),
        ([_step("a", count=0)], "count must be >= 1"),
        ([_step("a", "a")], "depends on itself"),
        ([_step("a", "ghost")], "unknown step ghost"),
        ([_step("a", "c"), _step("b", "a"), _step("c", "b")], "form a cycle"),
    ],
)
def test_validate_rejects_malformed_graphs(steps, message) -> None:
    with pytest.raises(MalformedPipelineGraphError, match=message):
        validate_pipeline_steps(steps)


def test_step_from_dict_accepts_camel_case_and_rejects_unknown_fields() -> None:
    step = PipelineStep.from_dict(
        {
            "id": "review",
            "type": "reviewer",
            "agentId": "writer",
            "dependsOn": ["draft"],
            "outputFiles": ["REVIEW.md"],
        },
    )

    assert step.name == "review"
    assert step.type == StepType.REVIEWER
    assert step.agent_id == "writer"
    assert step.depends_on == ("draft",)
    assert step.output_files == ("REVIEW.md",)
    with pytest.raises(ValueError, match="Unknown pipeline step fields: colour"):
        PipelineStep.from_dict({"id": "x", "colour": "red"})
    with pytest.raises(TypeError, match="count must be an integer"):
        PipelineStep.from_dict({"id": "x", "count": "3"})


def test_builtin_templates_are_valid_graphs() -> None:
    templates = get_pipeline_templates()

    assert [template.id for template in templates] == [
        "software-dev",
        "content-creation",
        "simple",
    ]
    for template in templates:
        validate_pipeline_steps(template.steps)

    software = get_pipeline_template("software-dev")
    workers = next(step for step in software.steps if step.id == "workers")
    assert workers.count == 3
    assert {step.id for step in software.steps if step.depends_on == ("integrator",)} == {
        "reviewer",
        "tester",
    }
    with pytest.raises(ValueError, match="Unknown pipeline template: nope"):
        get_pipeline_template("nope")
    assert config_from_template("simple", shared_context=False).shared_context is False
