"""Instruction framing for diagram generation and repair.

The diagram-type selector is one of:

* ``"auto"``: the model picks the best grammar from ``SUPPORTED_GRAMMARS``
* a concrete grammar name (``"flowchart"``, ``"pie"``, ...)
* a conceptual category from ``CATEGORIES`` (``"mindMap"``, ``"timeline"``, ...)

Anything else is passed through to the model as a literal hint.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

AUTO = "auto"

SUPPORTED_GRAMMARS: dict[str, str] = {
    "flowchart": "Flowchart",
    "sequenceDiagram": "Sequence diagram",
    "classDiagram": "Class diagram",
    "pie": "Pie chart",
    "gantt": "Gantt chart",
    "stateDiagram": "State diagram",
    "erDiagram": "Entity relationship diagram",
    "journey": "User journey",
    "gitGraph": "Git graph",
}


@dataclass(frozen=True)
class DiagramCategory:
    key: str
    label: str
    guidance: str


CATEGORIES: dict[str, DiagramCategory] = {
    c.key: c
    for c in (
        DiagramCategory("mindMap", "Mind map", "a mind-map style flowchart"),
        DiagramCategory("hierarchyTree", "Hierarchy tree", "a hierarchical flowchart or graph"),
        DiagramCategory(
            "relationshipDiagram", "Relationship diagram", "a relationship-style graph or flowchart"
        ),
        DiagramCategory("freeformLayout", "Freeform layout", "a free-layout graph"),
        DiagramCategory("comparisonDiagram", "Comparison diagram", "a comparison-structured flowchart"),
        DiagramCategory("timeline", "Timeline", "a timeline-style gantt chart or flowchart"),
        DiagramCategory("matrixMap", "Matrix map", "a matrix-structured flowchart"),
        DiagramCategory(
            "scenarioScript", "Scenario script", "a scenario flowchart or sequenceDiagram"
        ),
        DiagramCategory("visualNotes", "Visual notes", "a flowchart mixing notes and shapes"),
    )
}


def list_diagram_types() -> list[dict[str, str]]:
    """Every selector a client may send, in display order."""
    types = [{"value": AUTO, "label": "Automatic", "kind": "auto"}]
    types += [{"value": k, "label": v, "kind": "grammar"} for k, v in SUPPORTED_GRAMMARS.items()]
    types += [{"value": c.key, "label": c.label, "kind": "category"} for c in CATEGORIES.values()]
    return types


def diagram_type_instruction(diagram_type: str | None) -> str:
    if not diagram_type or diagram_type == AUTO:
        choices = ", ".join(SUPPORTED_GRAMMARS)
        return (
            "a) Based on your analysis, choose the single mermaid diagram type that best "
            f"expresses the structure of the document, from: {choices}."
        )
    category = CATEGORIES.get(diagram_type)
    target = category.guidance if category else diagram_type
    return f"a) Generate the diagram specifically as {target}."


_PREAMBLE = """\
Purpose and goals:
* Understand the structure and logical relationships of the document the user provides.
* Turn the document's content and relationships into diagram code that follows mermaid syntax.
* Make sure the diagram contains every key element of the document and the links between them.
* Support continuous conversation: use earlier turns to understand requested edits and additions.

Behaviour and rules:
1. Conversation context:
a) If there are earlier turns, analyse how the user's request has evolved.
b) Decide whether the current input modifies the previous diagram, adds content, or is a new request.
c) For modifications, adjust the existing diagram instead of starting over.
d) For additions, integrate the new information into the existing structure.

2. Document analysis:
a) Read the user's document carefully.
b) Identify its elements (concepts, entities, steps, processes).
c) Understand the relationships between them (containment, sequence, cause and effect).

3. Diagram generation:
"""

_SYNTAX_RULES = """\
b) Write correct mermaid code and follow these rules for special characters:
* Node IDs must use only English letters and digits, for example A, B, step1, process2.
* Labels that contain non-ASCII text or special characters must be wrapped in double quotes, for example A["用户打开首页"].
* Inside quoted labels, write <, >, & and # as HTML entities.
* Use %% for comments.
* Do not put a space after a list number inside a label: write 1.xxx instead of 1. xxx.
* Use different background colours to separate levels or groups.

Pie charts must follow exactly this layout:
```
pie title Chart title
    "Category 1" : 10
    "Category 2" : 20
```
The first line is "pie title <title>", every label is double-quoted, the colon has a space on each side, and each data line is indented by four spaces.

c) Keep the diagram clear and easy to read, and faithful to the document's content and logic.
d) Do not wrap the code in <artifact> tags. Return only the diagram code in a single ```mermaid fenced block and nothing else.

Example of correct syntax:
```mermaid
flowchart TD
    A["用户打开首页"] --> B["输入手机号"]
    B --> C{"手机号格式正确"}
    C -->|是| D["输入验证码"]
    C -->|否| E["提示重新输入"]
```

4. Details:
a) Do not leave out any important detail or relationship from the document.
b) The code must be ready to paste into any tool that renders mermaid.
"""


def build_system_prompt(diagram_type: str | None) -> str:
    return f"{_PREAMBLE}{diagram_type_instruction(diagram_type)}\n\n{_SYNTAX_RULES}"


def build_messages(
    diagram_type: str | None,
    text: str,
    context: Sequence[dict[str, str]] = (),
) -> list[dict[str, str]]:
    """Return ``[system, *context, user]`` for one generation request."""
    return [
        {"role": "system", "content": build_system_prompt(diagram_type)},
        *[{"role": m["role"], "content": m["content"]} for m in context],
        {"role": "user", "content": text},
    ]


def trim_context(messages: Iterable[dict[str, str]], limit: int) -> list[dict[str, str]]:
    """Keep the last ``limit`` user/assistant messages."""
    kept = [m for m in messages if m.get("role") in ("user", "assistant")]
    if limit <= 0:
        return []
    return kept[-limit:]


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_RUNS = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Normalize raw input text before it is sent to the model."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


# ── Repair framing ────────────────────────────────────────────────────────────

_REPAIR_SYSTEM = """\
You fix mermaid diagram code that fails to render.
Keep the meaning, structure and labels of the diagram; change only what is needed to make it valid.

""" + _SYNTAX_RULES


def build_repair_messages(artifact: str, error_text: str | None = None) -> list[dict[str, str]]:
    parts = [f"Current diagram code:\n```mermaid\n{artifact}\n```"]
    if error_text:
        parts.append(f"Rendering error:\n{error_text}")
        parts.append("Fix the specific error above.")
    else:
        parts.append("Check the code for syntax problems and fix them.")
    parts.append("Return only the corrected code in a single ```mermaid fenced block.")
    return [
        {"role": "system", "content": _REPAIR_SYSTEM},
        {"role": "user", "content": "\n\n".join(parts)},
    ]
