"""
Output contracts per agent output kind.

Each schema validates the data portion of a generation result. Unknown
extra fields are kept so shape normalization never loses model output.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AfterValidator, AliasChoices, BaseModel, Field

_OPEN = {"extra": "allow", "populate_by_name": True}


def _non_blank(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be empty")
    return value


NonBlankStr = Annotated[str, AfterValidator(_non_blank)]


# ─── LP Structure ─────────────────────────────────────────────

class LpQuestion(BaseModel):
    model_config = _OPEN

    question: str
    intent: str = Field(default="")


class LpSection(BaseModel):
    model_config = _OPEN

    name: str = Field(validation_alias=AliasChoices("name", "title"))
    purpose: str = Field(default="")
    sub_elements: list[str] = Field(default_factory=list, alias="subElements")
    lp_should_answer: list[str] = Field(default_factory=list, alias="lpShouldAnswer")


class FinalCv(BaseModel):
    model_config = _OPEN

    cta_hint: NonBlankStr = Field(alias="ctaHint")


class LpStructureOutput(BaseModel):
    model_config = _OPEN

    type: Literal["lp_structure"] = "lp_structure"
    exec_summary: NonBlankStr = Field(alias="execSummary", max_length=500)
    questions: list[LpQuestion | str]
    sections: list[LpSection]
    final_cv: FinalCv = Field(alias="finalCv")
    avoid: list[str] = Field(default_factory=list)


# ─── Banner Structure ─────────────────────────────────────────

class BannerIdea(BaseModel):
    model_config = _OPEN

    title: str
    pattern: str = Field(default="")
    main_copy: str = Field(default="", alias="mainCopy")
    visual: str = Field(default="")


class LpSplit(BaseModel):
    model_config = _OPEN

    role_of_banner: NonBlankStr = Field(alias="roleOfBanner")


class BannerStructureOutput(BaseModel):
    model_config = _OPEN

    type: Literal["banner_structure"] = "banner_structure"
    exec_summary: NonBlankStr = Field(alias="execSummary", max_length=500)
    banner_ideas: list[BannerIdea] = Field(alias="bannerIdeas")
    design_notes: str = Field(alias="designNotes")
    lp_split: LpSplit = Field(alias="lpSplit")
    avoid: list[str] = Field(default_factory=list)


# ─── Insight Kinds ────────────────────────────────────────────

class MarketInsightItem(BaseModel):
    model_config = _OPEN

    fact: str
    hypothesis: str
    supporting_banners: list[str] = Field(default_factory=list)
    category: Literal["high_frequency", "low_frequency", "combination", "brand_difference"]


class MarketInsightOutput(BaseModel):
    model_config = _OPEN

    type: Literal["market_insight"] = "market_insight"
    insights: list[MarketInsightItem] = Field(min_length=1)


class ElementRefs(BaseModel):
    components: list[str] = Field(default_factory=list)
    appeal_axes: list[str] = Field(default_factory=list)


class StrategyOptionItem(BaseModel):
    model_config = _OPEN

    option_type: Literal["A", "B", "C"]
    title: str
    referenced_elements: ElementRefs = Field(default_factory=ElementRefs)
    avoided_elements: ElementRefs = Field(default_factory=ElementRefs)
    potential_benefits: list[str] = Field(default_factory=list)
    potential_risks: list[str] = Field(default_factory=list)
    target_persona: str | None = Field(default=None)


class StrategyOptionOutput(BaseModel):
    model_config = _OPEN

    type: Literal["strategy_option"] = "strategy_option"
    options: list[StrategyOptionItem] = Field(min_length=1)


class PlanningHookQuestion(BaseModel):
    question: str
    context: str = Field(default="")


class PlanningHookItem(BaseModel):
    model_config = _OPEN

    strategy_option: Literal["A", "B", "C"]
    hooks: list[PlanningHookQuestion] = Field(min_length=1)


class PlanningHookOutput(BaseModel):
    model_config = _OPEN

    type: Literal["planning_hook"] = "planning_hook"
    planning_hooks: list[PlanningHookItem] = Field(alias="planningHooks", min_length=1)


# ─── Presentation ─────────────────────────────────────────────

PresentationBlockType = Literal[
    "hero",
    "bullets",
    "cards",
    "table",
    "timeline",
    "copyBlocks",
    "imagePrompts",
    "markdown",
]


class PresentationBlock(BaseModel):
    model_config = _OPEN

    id: str
    type: PresentationBlockType
    label: str


class PresentationModel(BaseModel):
    """Display model rendered by the workflow UI; independent of the data contract."""

    model_config = _OPEN

    title: str
    blocks: list[PresentationBlock] = Field(default_factory=list)


OUTPUT_SCHEMAS: dict[str, type[BaseModel]] = {
    "lp_structure": LpStructureOutput,
    "banner_structure": BannerStructureOutput,
    "market_insight": MarketInsightOutput,
    "strategy_option": StrategyOptionOutput,
    "planning_hook": PlanningHookOutput,
}


def schema_for_kind(output_kind: str | None) -> type[BaseModel] | None:
    return OUTPUT_SCHEMAS.get((output_kind or "").strip())


def describe_schema(model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema embedded in prompts to describe the expected shape."""
    return model.model_json_schema(by_alias=True)
