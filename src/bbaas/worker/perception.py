"""
Page perception for the agent loop.

Each observation tags every visible interactive element with a fresh
``data-agent-id`` and builds a SelectorIndex from those ids. Ids restart at 1
on every observation, so an id is only meaningful for the index that issued it.
"""

import base64
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

AGENT_ID_ATTR = "data-agent-id"
TRUNCATION_SUFFIX = "...(truncated)"

CLEAN_TEXT_SCRIPT = """
() => {
    const clone = document.body ? document.body.cloneNode(true) : null;
    if (!clone) return '';
    const noise = ['script', 'style', 'svg', 'noscript', 'iframe', 'link', 'meta'];
    noise.forEach(s => clone.querySelectorAll(s).forEach(e => e.remove()));
    return (clone.innerText || clone.textContent || '').replace(/\\s+/g, ' ').trim();
}
"""

INDEX_PAGE_SCRIPT = """
(attr) => {
    document.querySelectorAll('[' + attr + ']').forEach(el => el.removeAttribute(attr));

    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        const rect = el.getBoundingClientRect();
        if (style.display === 'none' || style.visibility === 'hidden') return false;
        if (parseFloat(style.opacity) === 0) return false;
        return rect.width > 0 && rect.height > 0;
    };

    const labelOf = (el) => {
        const candidates = [
            el.getAttribute('aria-label') || '',
            el.labels && el.labels.length ? el.labels[0].innerText : '',
            el.getAttribute('placeholder') || '',
            (el.innerText || '').trim(),
            el.getAttribute('title') || '',
            el.getAttribute('alt') || '',
        ];
        const chosen = candidates.map(c => c.trim()).find(c => c.length > 0);
        return chosen ? chosen.slice(0, 60) : '';
    };

    const selector = [
        'input', 'textarea', 'select', 'button', 'a[href]',
        '[role="button"]', '[contenteditable="true"]',
    ].join(', ');
    const elements = [];
    let nextId = 0;
    for (const el of document.querySelectorAll(selector)) {
        const type = (el.getAttribute('type') || '').toLowerCase();
        if (el.tagName === 'INPUT' && type === 'hidden') continue;
        if (!isVisible(el)) continue;

        nextId += 1;
        el.setAttribute(attr, String(nextId));

        let ident = el.tagName.toLowerCase();
        if (el.id) ident += '#' + el.id;
        if (el.getAttribute('name')) ident += '[name="' + el.getAttribute('name') + '"]';
        if (el.getAttribute('type')) ident += '[type="' + el.getAttribute('type') + '"]';

        elements.push({
            id: nextId,
            tag: el.tagName.toLowerCase(),
            identifier: ident,
            label: labelOf(el),
            value: typeof el.value === 'string' ? el.value.slice(0, 60) : '',
        });
    }

    const clone = document.body ? document.body.cloneNode(true) : null;
    let text = '';
    if (clone) {
        ['script', 'style', 'svg', 'noscript', 'iframe', 'link', 'meta']
            .forEach(s => clone.querySelectorAll(s).forEach(e => e.remove()));
        text = (clone.innerText || clone.textContent || '').replace(/\\s+/g, ' ').trim();
    }
    return { elements, text };
}
"""


class PageAnalysisError(Exception):
    """Raised when the page cannot be indexed or captured."""

    pass


class StaleSelectorError(KeyError):
    """Raised when an element id does not belong to the current index."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown element id"


@dataclass
class ElementDescription:
    """Human-readable view of one indexed element."""

    id: int
    tag: str
    identifier: str
    label: str = ""
    value: str = ""

    def describe(self) -> str:
        parts = [f"[{self.id}] {self.identifier}"]
        if self.label:
            parts.append(f'label="{self.label}"')
        if self.tag in ("input", "textarea", "select"):
            parts.append(f'value="{self.value}"')
        return " ".join(parts)


@dataclass
class SelectorIndex:
    """Element id -> selector mapping for a single observation."""

    iteration: int
    selectors: dict[int, str] = field(default_factory=dict)

    def resolve(self, element_id: int | None) -> str:
        if element_id is None:
            raise StaleSelectorError("command has no element id")
        try:
            return self.selectors[element_id]
        except KeyError:
            raise StaleSelectorError(
                f"element {element_id} is not in the index of iteration {self.iteration}"
            ) from None


@dataclass
class PageObservation:
    index: SelectorIndex
    elements: list[ElementDescription]
    text: str
    screenshot: str


def truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATION_SUFFIX
    return text


def selector_for(element_id: int) -> str:
    return f'[{AGENT_ID_ATTR}="{element_id}"]'


async def take_screenshot(page: Page) -> str:
    """Capture the viewport as base64 JPEG."""
    try:
        raw = await page.screenshot(type="jpeg")
    except PlaywrightError as e:
        raise PageAnalysisError(f"could not take screenshot: {e}") from e
    return base64.b64encode(raw).decode("ascii")


async def condensed_text(page: Page, limit: int) -> str:
    """Plain page text without markup noise, whitespace collapsed and truncated."""
    try:
        text = await page.evaluate(CLEAN_TEXT_SCRIPT)
    except PlaywrightError as e:
        raise PageAnalysisError(f"could not clean page content: {e}") from e
    if not isinstance(text, str):
        text = "Unable to retrieve text"
    return truncate(text, limit)


def _parse_element(item: Any) -> ElementDescription | None:
    if not isinstance(item, dict):
        return None
    element_id = item.get("id")
    if not isinstance(element_id, int) or isinstance(element_id, bool):
        return None

    def text_field(name: str) -> str:
        value = item.get(name)
        return value if isinstance(value, str) else ""

    tag = text_field("tag")
    return ElementDescription(
        id=element_id,
        tag=tag,
        identifier=text_field("identifier") or tag,
        label=text_field("label"),
        value=text_field("value"),
    )


async def observe(page: Page, iteration: int, text_limit: int) -> PageObservation:
    """
    Index the page and capture a screenshot.

    Raises:
        PageAnalysisError: The page script or the screenshot failed.
    """
    try:
        raw = await page.evaluate(INDEX_PAGE_SCRIPT, AGENT_ID_ATTR)
    except PlaywrightError as e:
        raise PageAnalysisError(f"could not analyze page: {e}") from e

    if not isinstance(raw, dict):
        raise PageAnalysisError("could not analyze page: unexpected script result")

    raw_elements = raw.get("elements")
    elements = [
        element
        for element in map(_parse_element, raw_elements if isinstance(raw_elements, list) else [])
        if element is not None
    ]
    index = SelectorIndex(
        iteration=iteration,
        selectors={element.id: selector_for(element.id) for element in elements},
    )

    text = raw.get("text")
    screenshot = await take_screenshot(page)

    return PageObservation(
        index=index,
        elements=elements,
        text=truncate(text if isinstance(text, str) else "", text_limit),
        screenshot=screenshot,
    )
