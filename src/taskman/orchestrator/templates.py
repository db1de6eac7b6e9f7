"""Built-in pipeline templates."""

from __future__ import annotations

from dataclasses import dataclass

from taskman.orchestrator.models import (
    PipelineConfig,
    PipelineStep,
    StepFailurePolicy,
    StepType,
)


@dataclass(frozen=True, slots=True)
class PipelineTemplate:
    id: str
    name: str
    description: str
    steps: tuple[PipelineStep, ...]


PIPELINE_TEMPLATES: tuple[PipelineTemplate, ...] = (
    PipelineTemplate(
        id="software-dev",
        name="Software Development",
        description=(
            "Complete software development pipeline with evaluation, parallel workers, "
            "integration, review, and testing"
        ),
        steps=(
            PipelineStep(
                id="evaluator",
                name="Evaluator & Planner",
                type=StepType.EVALUATOR,
                instructions="Analyze requirements and create detailed technical plan (PLAN.md)",
                output_files=("PLAN.md", "ARCHITECTURE.md"),
            ),
            PipelineStep(
                id="workers",
                name="Development Workers",
                type=StepType.WORKER,
                count=3,
                depends_on=("evaluator",),
                instructions="Implement assigned components based on PLAN.md",
            ),
            PipelineStep(
                id="integrator",
                name="System Integrator",
                type=StepType.INTEGRATOR,
                depends_on=("workers",),
                instructions="Merge all worker outputs, resolve conflicts, create unified system",
                output_files=("INTEGRATION_REPORT.md",),
            ),
            PipelineStep(
                id="reviewer",
                name="Code Reviewer",
                type=StepType.REVIEWER,
                depends_on=("integrator",),
                instructions="Review code quality, best practices, and suggest improvements",
                output_files=("REVIEW_REPORT.md",),
            ),
            PipelineStep(
                id="tester",
                name="QA Tester",
                type=StepType.TESTER,
                depends_on=("integrator",),
                instructions="Create and run tests, verify functionality",
                output_files=("TEST_RESULTS.md",),
            ),
        ),
    ),
    PipelineTemplate(
        id="content-creation",
        name="Content Creation",
        description="Research, write, and edit content",
        steps=(
            PipelineStep(
                id="researcher",
                name="Researcher",
                type=StepType.EVALUATOR,
                instructions="Research topic and create content outline",
                output_files=("RESEARCH.md", "OUTLINE.md"),
            ),
            PipelineStep(
                id="writers",
                name="Content Writers",
                type=StepType.WORKER,
                count=2,
                depends_on=("researcher",),
                instructions="Write content sections based on outline",
            ),
            PipelineStep(
                id="editor",
                name="Editor",
                type=StepType.REVIEWER,
                depends_on=("writers",),
                instructions="Edit and polish final content",
                output_files=("FINAL_CONTENT.md",),
            ),
        ),
    ),
    PipelineTemplate(
        id="simple",
        name="Simple Task",
        description="Single agent execution (default behavior)",
        steps=(
            PipelineStep(
                id="worker",
                name="Worker",
                type=StepType.CUSTOM,
                instructions="Execute the task",
            ),
        ),
    ),
)


def get_pipeline_templates() -> list[PipelineTemplate]:
    return list(PIPELINE_TEMPLATES)


def get_pipeline_template(template_id: str) -> PipelineTemplate:
    for template in PIPELINE_TEMPLATES:
        if template.id == template_id:
            return template
    known = ", ".join(template.id for template in PIPELINE_TEMPLATES)
    raise ValueError(f"Unknown pipeline template: {template_id} (known: {known})")


def config_from_template(
    template_id: str,
    *,
    shared_context: bool = True,
    failure_policy: StepFailurePolicy = StepFailurePolicy.STRICT,
) -> PipelineConfig:
    """Pipeline config built from a template's steps."""

    template = get_pipeline_template(template_id)
    return PipelineConfig(
        template_id=template.id,
        steps=template.steps,
        shared_context=shared_context,
        failure_policy=failure_policy,
    )
