"""Prompt templates. Instructions are repeated after the page context so small models keep them."""

DEFAULT_DESCRIBE_REQUEST = "Explain what this page is."
DEFAULT_AGENT_GOAL = "Do something on this page."

DESCRIBE_PROMPT = """*** SYSTEM INSTRUCTIONS ***
You are a generic web analyst AI.
1. MANDATORY: You must ALWAYS respond in ENGLISH.
2. Ignore the language of the webpage content for your response language.
3. Be concise and professional.
4. Do NOT hallucinate HTML tags.

*** WEBPAGE TEXT CONTENT ***
{page_text}

*** USER REQUEST ***
{request}

*** FINAL COMMAND ***
Based on the image and text above, answer the user's request.
Ensure your entire response is in English.
Response:"""

AGENT_PROMPT = """*** SYSTEM INSTRUCTIONS ***
You are a Browser Automation Agent working in steps.
Each step you see a screenshot of the page, the list of interactive elements
and the outcome of your previous actions. Return the next actions to perform.

OUTPUT FORMAT:
Return ONLY a JSON array of objects. Do not write explanations.
Supported actions:
1. {{"action": "fill", "id": <element id>, "value": "text to type"}}
2. {{"action": "click", "id": <element id>}}
3. {{"action": "press", "key": "Enter"}}
4. {{"action": "finish", "result": "what was achieved or the answer to the goal"}}

*** GOAL ***
{goal}

*** PREVIOUS ACTIONS ***
{history}

*** INTERACTIVE ELEMENTS ***
{elements}

*** WEBPAGE CONTEXT ***
{page_text}

*** FINAL COMMAND ***
Generate the JSON array of actions for this step.
Element ids are only valid for this step; use ids from the list above.
If the goal is already achieved, return a single "finish" action.
Output JSON ONLY.
Response:"""


def build_describe_prompt(page_text: str, request: str) -> str:
    return DESCRIBE_PROMPT.format(
        page_text=page_text or "(no text content)",
        request=request or DEFAULT_DESCRIBE_REQUEST,
    )


def build_agent_prompt(goal: str, history: list[str], elements: list[str], page_text: str) -> str:
    history_text = (
        "\n".join(f"{i}. {entry}" for i, entry in enumerate(history, 1))
        or "No actions taken yet."
    )
    return AGENT_PROMPT.format(
        goal=goal or DEFAULT_AGENT_GOAL,
        history=history_text,
        elements="\n".join(elements) or "No interactive elements found on the page.",
        page_text=page_text or "(no text content)",
    )
