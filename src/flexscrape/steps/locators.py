"""Locator rewriting for per-item list processing.

Inside a list loop every sub-step locator is rebased onto the current item.
With the item root ``/html/body/ul/li`` and item index 3:

===============================  =================================
sub-step locator                 rewritten
===============================  =================================
``/html/body/ul/li[1]/a``        ``/html/body/ul/li[3]/a``
``/html/body/ul/li/a``           ``/html/body/ul/li[3]/a``
``./a`` or ``a``                 ``/html/body/ul/li[3]/a``
``.//span``                      ``/html/body/ul/li[3]//span``
``//header/h1``                  unchanged (absolute, outside root)
CSS ``a.title``                  ``[data-item-index="3"] a.title``
===============================  =================================

The root prefix only matches on a path boundary, so ``/a/bc`` is never
treated as a child of ``/a/b``.
"""

from __future__ import annotations

import re

from flexscrape.steps.models import ExtractStep, LocatorStep, StepBase

ITEM_INDEX_ATTR = "data-item-index"

_LEADING_INDEX = re.compile(r"^\[\d+\]")


def relative_part(item_root: str, xpath: str) -> str | None:
    """Return *xpath* relative to any item under *item_root*.

    ``""`` means the item itself; ``None`` means *xpath* is absolute and
    points outside the item root.
    """
    if xpath.startswith(item_root):
        rest = xpath[len(item_root):]
        if rest == "" or rest[0] in "[/":
            rest = _LEADING_INDEX.sub("", rest, count=1)
            return rest[1:] if rest.startswith("/") else rest
    if xpath == ".":
        return ""
    if xpath.startswith("./"):
        return xpath[2:]
    if xpath.startswith(("/", "(")):
        return None
    return xpath


def item_xpath(item_root: str, index: int) -> str:
    """XPath of the *index*-th (1-based) item."""
    return f"{item_root}[{index}]"


def _join(base: str, rest: str) -> str:
    if not rest:
        return base
    if rest.startswith("["):
        return base + rest
    return f"{base}/{rest}"


def rebase_xpath(item_root: str, index: int, xpath: str) -> str:
    """Point *xpath* at item *index*; absolute paths outside the root are returned as-is."""
    rest = relative_part(item_root, xpath)
    if rest is None:
        return xpath
    return _join(item_xpath(item_root, index), rest)


def field_xpath(item_root: str, index: int, xpath: str) -> str:
    """Resolve an EXTRACT_LIST field XPath against item *index*.

    Field paths are always item-relative: a leading ``/`` is read as a path
    suffix of the item (``/h2`` -> ``<item>[i]/h2``).
    """
    rest = relative_part(item_root, xpath)
    if rest is None:
        return item_xpath(item_root, index) + xpath
    return _join(item_xpath(item_root, index), rest)


def scope_selector(index: int, selector: str) -> str:
    """Scope a CSS selector to the item carrying ``data-item-index=index``."""
    return f'[{ITEM_INDEX_ATTR}="{index}"] {selector}'


def rebase_step(step: StepBase, item_root: str, index: int) -> StepBase:
    """Return a copy of *step* with every locator bound to item *index*."""
    if isinstance(step, ExtractStep):
        extracts = [
            spec.model_copy(
                update={
                    "xpath": rebase_xpath(item_root, index, spec.xpath) if spec.xpath else None,
                    "selector": scope_selector(index, spec.selector) if spec.selector else None,
                }
            )
            for spec in step.extracts
        ]
        return step.model_copy(update={"extracts": extracts})
    if isinstance(step, LocatorStep):
        return step.model_copy(
            update={
                "xpath": rebase_xpath(item_root, index, step.xpath) if step.xpath else None,
                "selector": scope_selector(index, step.selector) if step.selector else None,
            }
        )
    return step
