"""Task DSL data models: the closed set of step kinds and their payloads.

A task is an ordered list of steps. Each step is a frozen pydantic model
tagged by ``type``; the ``Step`` annotated union lets pydantic pick the right
model from the tag. Field names are snake_case in Python and camelCase on the
wire::

    [
      {"type": "CONFIGURE", "concurrency": 3, "blockedResources": ["image"]},
      {"type": "NAVIGATE", "url": "https://example.com", "randomDelay": {"min": 500, "max": 1500}},
      {"type": "EXTRACT_LIST", "listXPath": "//ul", "itemXPath": "/li",
       "extractFields": [{"name": "title", "xpath": "./h2"}]}
    ]

All durations are milliseconds.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from flexscrape.settings.config import RetrySettings

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    """Every step kind the interpreter understands."""

    CONFIGURE = "CONFIGURE"
    READ_JSONL = "READ_JSONL"
    FETCH_AND_MERGE = "FETCH_AND_MERGE"
    BLOCK_RESOURCES = "BLOCK_RESOURCES"
    DISABLE_REQUEST_INTERCEPTION = "DISABLE_REQUEST_INTERCEPTION"
    NAVIGATE = "NAVIGATE"
    WAIT_FOR_SELECTOR = "WAIT_FOR_SELECTOR"
    EXTRACT = "EXTRACT"
    EXTRACT_LIST = "EXTRACT_LIST"
    LIST_LOOP = "LIST_LOOP"
    FETCH_ARTICLES = "FETCH_ARTICLES"
    CLICK = "CLICK"
    PAGINATE = "PAGINATE"
    CUSTOM_FUNCTION = "CUSTOM_FUNCTION"
    DETECT_CAPTCHA = "DETECT_CAPTCHA"
    RANDOM_MOUSE_MOVEMENT = "RANDOM_MOUSE_MOVEMENT"
    DEBUG_MOUSE = "DEBUG_MOUSE"
    STEP_OUT_WINDOW = "STEP_OUT_WINDOW"
    PRESS_ENTER = "PRESS_ENTER"
    HUMAN_LIKE_TEXT_EXTRACTION = "HUMAN_LIKE_TEXT_EXTRACTION"
    INSERT_DATA = "INSERT_DATA"
    REFRESH_PAGE = "REFRESH_PAGE"


class WireModel(BaseModel):
    """Frozen model serialised with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _renamed(data: Any, renames: dict[str, str]) -> Any:
    """Copy *data* with older field names moved to their current names.

    A key is only moved when the current name is absent, so a payload that
    spells both still fails as an extra input.
    """
    if not isinstance(data, dict) or not any(old in data for old in renames):
        return data
    data = dict(data)
    for old, new in renames.items():
        if old in data and new not in data:
            data[new] = data.pop(old)
    return data


# ---------------------------------------------------------------------------
# Shared value objects
# ---------------------------------------------------------------------------


class DelayRange(WireModel):
    """Inclusive millisecond range a random delay is drawn from."""

    min: float = Field(ge=0)
    max: float = Field(ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "DelayRange":
        if self.min > self.max:
            raise ValueError(f"delay min ({self.min}) must not exceed max ({self.max})")
        return self

    def as_tuple(self) -> tuple[float, float]:
        return (self.min, self.max)


class RetryPolicy(WireModel):
    """Exponential backoff for per-record fetches.

    The delay before retry ``k`` (1-based) is
    ``min(initial_delay * backoff_multiplier ** (k - 1), max_delay)``,
    scaled at sleep time by a random factor in ``1 ± jitter``.
    """

    max_retries: int = Field(default=3, ge=0, le=20)
    initial_delay: float = Field(default=1000, ge=0)
    max_delay: float = Field(default=10_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, s: RetrySettings | None = None) -> "RetryPolicy":
        if s is None:
            from flexscrape.settings import get_settings

            s = get_settings().retry
        return cls(
            max_retries=s.max_retries,
            initial_delay=s.initial_delay_ms,
            max_delay=s.max_delay_ms,
            backoff_multiplier=s.backoff_multiplier,
            jitter=s.jitter,
        )


class MouseMovement(WireModel):
    """Hover behaviour applied to each list item."""

    enabled: bool = True
    hover_time: DelayRange = DelayRange(min=300, max=1000)


class Position(WireModel):
    x: float
    y: float


class ExtractSpec(WireModel):
    """One named value pulled from the page by an EXTRACT step."""

    variable_name: str = Field(min_length=1)
    selector: str | None = None
    xpath: str | None = None
    attribute: str = "innerText"
    multiple: bool = False

    @model_validator(mode="after")
    def _has_locator(self) -> "ExtractSpec":
        if not self.selector and not self.xpath:
            raise ValueError(f"extract '{self.variable_name}' needs a selector or an xpath")
        return self


class FieldSpec(WireModel):
    """One per-item field of an EXTRACT_LIST step (XPath relative to the item)."""

    name: str = Field(min_length=1)
    xpath: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Step bases
# ---------------------------------------------------------------------------


class StepBase(WireModel):
    """Fields every step carries.

    ``renamed_fields`` maps field names used by older task files to their
    current wire names; those files keep loading unchanged.
    """

    renamed_fields: ClassVar[dict[str, str]] = {}

    random_delay: DelayRange | None = None
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_renamed_fields(cls, data: Any) -> Any:
        return _renamed(data, cls.renamed_fields)


class LocatorStep(StepBase):
    """A step that targets one element by CSS selector or XPath."""

    selector: str | None = None
    xpath: str | None = None

    @model_validator(mode="after")
    def _has_locator(self) -> "LocatorStep":
        if not self.selector and not self.xpath:
            raise ValueError(f"{self.type} step needs a selector or an xpath")  # type: ignore[attr-defined]
        return self


class ListStepBase(StepBase):
    """Common payload of EXTRACT_LIST and LIST_LOOP."""

    list_selector: str | None = None
    list_xpath: str | None = Field(default=None, alias="listXPath")
    item_xpath: str = Field(alias="itemXPath", min_length=1)
    item_delay: DelayRange = DelayRange(min=500, max=1500)
    mouse_movement: MouseMovement = MouseMovement()

    @model_validator(mode="after")
    def _has_container(self) -> "ListStepBase":
        if not self.list_selector and not self.list_xpath:
            raise ValueError(f"{self.type} step needs listSelector or listXPath")  # type: ignore[attr-defined]
        return self

    @property
    def item_root(self) -> str:
        """XPath matching every item (without an index).

        ``itemXPath`` is appended to ``listXPath`` unless it is already an
        absolute path of its own (``//...`` or starting with ``listXPath``).
        """
        if not self.list_xpath or self.item_xpath.startswith(("//", self.list_xpath)):
            return self.item_xpath
        return f"{self.list_xpath}{self.item_xpath}"


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class ConfigureStep(StepBase):
    """Run-level configuration; applied once before every other step.

    Omitted fields fall back to the ``scrape`` settings defaults. Browser and
    session keys that older task files put here (``headless``,
    ``cookiesFile``, ...) belong to the settings and are ignored with a
    warning.
    """

    renamed_fields: ClassVar[dict[str, str]] = {"pageTimeout": "pageTimeoutMs"}
    session_keys: ClassVar[tuple[str, ...]] = ("headless", "cookiesFile", "domain", "proxyRotation")

    type: Literal["CONFIGURE"] = "CONFIGURE"
    concurrency: int | None = Field(default=None, ge=1, le=64)
    blocked_resources: list[str] | None = None
    output_file_name: str | None = None
    page_timeout_ms: int | None = Field(default=None, gt=0)
    mouse_movements: bool | None = None

    @model_validator(mode="before")
    @classmethod
    def _drop_session_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        ignored = [key for key in cls.session_keys if key in data]
        if not ignored:
            return data
        logger.warning("CONFIGURE ignores %s; set them in the settings instead", ", ".join(ignored))
        return {k: v for k, v in data.items() if k not in ignored}


class ReadJsonlStep(StepBase):
    type: Literal["READ_JSONL"] = "READ_JSONL"
    input_file: str = Field(min_length=1)
    limit_records: int | None = Field(default=None, ge=0)


class FetchAndMergeStep(StepBase):
    """Fetch each loaded record's ``link`` and append it with ``content``.

    Besides ``retry`` and ``requestDelay``, the older spellings are accepted:
    flat ``maxRetries``/``initialDelay``/``maxDelay``/``backoff``/``minDelay``
    keys, ``retryConfig`` and ``delayConfig`` (``{minDelay, maxDelay}``). A
    flat ``maxDelay`` caps both the backoff and the request delay. Nested
    configs win over flat keys.
    """

    type: Literal["FETCH_AND_MERGE"] = "FETCH_AND_MERGE"
    output_file: str | None = None
    content_selector: str = "body"
    wait_until: str = "networkidle"
    retry: RetryPolicy | None = None
    request_delay: DelayRange = DelayRange(min=2000, max=5000)

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_policies(cls, data: Any) -> Any:
        legacy = ("maxRetries", "initialDelay", "maxDelay", "backoff", "minDelay", "retryConfig", "delayConfig")
        if not isinstance(data, dict) or not any(key in data for key in legacy):
            return data
        data = dict(data)

        retry = {key: data.pop(key) for key in ("maxRetries", "initialDelay", "backoff") if key in data}
        delay = {"min": data.pop("minDelay")} if "minDelay" in data else {}
        if "maxDelay" in data:
            retry["maxDelay"] = delay["max"] = data.pop("maxDelay")
        retry.update(data.pop("retryConfig", None) or {})
        delay_config = data.pop("delayConfig", None) or {}
        if "minDelay" in delay_config:
            delay["min"] = delay_config["minDelay"]
        if "maxDelay" in delay_config:
            delay["max"] = delay_config["maxDelay"]

        if retry and "retry" not in data:
            data["retry"] = _renamed(retry, {"backoff": "backoffMultiplier"})
        if delay and "requestDelay" not in data:
            delay.setdefault("max", max(5000, delay.get("min", 0)))
            delay.setdefault("min", min(2000, delay["max"]))
            data["requestDelay"] = delay
        return data


class BlockResourcesStep(StepBase):
    type: Literal["BLOCK_RESOURCES"] = "BLOCK_RESOURCES"
    resource_types: list[str] | None = None


class DisableRequestInterceptionStep(StepBase):
    type: Literal["DISABLE_REQUEST_INTERCEPTION"] = "DISABLE_REQUEST_INTERCEPTION"


class NavigateStep(StepBase):
    renamed_fields: ClassVar[dict[str, str]] = {"timeout": "timeoutMs"}

    type: Literal["NAVIGATE"] = "NAVIGATE"
    url: str = Field(min_length=1)
    wait_until: str = "networkidle"
    timeout_ms: int = Field(default=30_000, gt=0)


class WaitForSelectorStep(LocatorStep):
    renamed_fields: ClassVar[dict[str, str]] = {"timeout": "timeoutMs"}

    type: Literal["WAIT_FOR_SELECTOR"] = "WAIT_FOR_SELECTOR"
    timeout_ms: int = Field(default=30_000, gt=0)


class ExtractStep(StepBase):
    type: Literal["EXTRACT"] = "EXTRACT"
    extracts: list[ExtractSpec] = Field(default_factory=list)


class ExtractListStep(ListStepBase):
    type: Literal["EXTRACT_LIST"] = "EXTRACT_LIST"
    extract_fields: list[FieldSpec] = Field(default_factory=list)


class ListLoopStep(ListStepBase):
    """Run ``steps_per_item`` once per list item with locators rebased onto it."""

    type: Literal["LIST_LOOP"] = "LIST_LOOP"
    steps_per_item: list["Step"] = Field(default_factory=list)

    @model_validator(mode="after")
    def _no_nested_loops(self) -> "ListLoopStep":
        for sub in self.steps_per_item:
            if sub.type in (StepType.LIST_LOOP, StepType.CONFIGURE):
                raise ValueError(f"{sub.type} is not allowed inside LIST_LOOP.stepsPerItem")
        return self


class FetchArticlesStep(StepBase):
    """Open one page per item (bounded by the configured concurrency)."""

    type: Literal["FETCH_ARTICLES"] = "FETCH_ARTICLES"
    items: list[dict[str, Any]] = Field(default_factory=list)
    content_selector: str = "article"
    wait_until: str = "networkidle"
    timeout_ms: int = Field(default=30_000, gt=0)


class ClickStep(LocatorStep):
    renamed_fields: ClassVar[dict[str, str]] = {"navigationTimeout": "navigationTimeoutMs"}

    type: Literal["CLICK"] = "CLICK"
    wait_for_nav: bool = False
    navigation_timeout_ms: int = Field(default=60_000, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)


class PaginateStep(StepBase):
    type: Literal["PAGINATE"] = "PAGINATE"
    next_button_xpath: str = Field(alias="nextButtonXPath", min_length=1)
    pages_to_scrape: int = Field(default=1, ge=1)
    page_delay: DelayRange = DelayRange(min=1000, max=2000)
    wait_until: str = "networkidle"
    timeout_ms: int = Field(default=30_000, gt=0)


class CustomFunctionStep(StepBase):
    type: Literal["CUSTOM_FUNCTION"] = "CUSTOM_FUNCTION"
    function: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


class DetectCaptchaStep(StepBase):
    type: Literal["DETECT_CAPTCHA"] = "DETECT_CAPTCHA"


class RandomMouseMovementStep(StepBase):
    """Wander the cursor for ``durationMs`` (±10%), pausing between moves.

    Older files spell the pause as flat ``minDelay``/``maxDelay``.
    """

    renamed_fields: ClassVar[dict[str, str]] = {"duration": "durationMs"}

    type: Literal["RANDOM_MOUSE_MOVEMENT"] = "RANDOM_MOUSE_MOVEMENT"
    duration_ms: float = Field(default=5000, gt=0)
    pause: DelayRange = DelayRange(min=100, max=500)
    margin: float = Field(default=100, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _accept_flat_pause(cls, data: Any) -> Any:
        if isinstance(data, dict) and "pause" not in data and ("minDelay" in data or "maxDelay" in data):
            data = dict(data)
            data["pause"] = {"min": data.pop("minDelay", 100), "max": data.pop("maxDelay", 500)}
        return data


class DebugMouseStep(StepBase):
    type: Literal["DEBUG_MOUSE"] = "DEBUG_MOUSE"
    enabled: bool = True
    start_position: Position = Position(x=200, y=200)
    cursor_color: str = "red"


class StepOutWindowStep(StepBase):
    type: Literal["STEP_OUT_WINDOW"] = "STEP_OUT_WINDOW"
    duration: DelayRange = DelayRange(min=2000, max=10_000)
    move_back_delay: DelayRange = DelayRange(min=500, max=2000)

    @model_validator(mode="before")
    @classmethod
    def _fixed_duration(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("duration"), (int, float)):
            data = {**data, "duration": {"min": data["duration"], "max": data["duration"]}}
        return data


class PressEnterStep(StepBase):
    type: Literal["PRESS_ENTER"] = "PRESS_ENTER"
    delay: DelayRange = DelayRange(min=50, max=200)
    hold_duration: DelayRange = DelayRange(min=50, max=150)


class HumanLikeTextExtractionStep(LocatorStep):
    type: Literal["HUMAN_LIKE_TEXT_EXTRACTION"] = "HUMAN_LIKE_TEXT_EXTRACTION"


class InsertDataStep(LocatorStep):
    type: Literal["INSERT_DATA"] = "INSERT_DATA"
    text: str
    pre_type_delay: DelayRange = DelayRange(min=100, max=300)
    typing_delay: DelayRange = DelayRange(min=50, max=150)


class RefreshPageStep(StepBase):
    renamed_fields: ClassVar[dict[str, str]] = {"timeout": "timeoutMs"}

    type: Literal["REFRESH_PAGE"] = "REFRESH_PAGE"
    wait_until: str = "networkidle"
    timeout_ms: int = Field(default=30_000, gt=0)
    pause: DelayRange = DelayRange(min=1000, max=3000)


Step = Annotated[
    Union[
        ConfigureStep,
        ReadJsonlStep,
        FetchAndMergeStep,
        BlockResourcesStep,
        DisableRequestInterceptionStep,
        NavigateStep,
        WaitForSelectorStep,
        ExtractStep,
        ExtractListStep,
        ListLoopStep,
        FetchArticlesStep,
        ClickStep,
        PaginateStep,
        CustomFunctionStep,
        DetectCaptchaStep,
        RandomMouseMovementStep,
        DebugMouseStep,
        StepOutWindowStep,
        PressEnterStep,
        HumanLikeTextExtractionStep,
        InsertDataStep,
        RefreshPageStep,
    ],
    Field(discriminator="type"),
]

ListLoopStep.model_rebuild()


class Task(WireModel):
    """An ordered, non-empty list of steps plus optional metadata."""

    name: str = ""
    steps: list[Step] = Field(min_length=1)
