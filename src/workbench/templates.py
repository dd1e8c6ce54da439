"""
Template rendering for target prompts and judge criterion prompts.

Both modes substitute {{token}} literals in a single pass over the template,
so variable names and values are inserted verbatim and a value that itself
contains a token is never expanded again.
"""

import re
from typing import Dict, Optional

INPUT_TOKEN = "{{input}}"

_TOKEN = re.compile(r"\{\{([^{}]*)\}\}")

# Each region is matched on its own, shortest span first; regions do not nest.
_EXPECTED_REGION = re.compile(r"\{\{#expected\}\}([\s\S]*?)\{\{/expected\}\}")


def _render_template(template_str: str, context: Dict[str, str]) -> str:
    """Replace {{key}} placeholders with values from context in one pass.

    Tokens without a matching key are left as they are.
    """
    def _lookup(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            return match.group(0)
        value = context[key]
        return "" if value is None else str(value)

    return _TOKEN.sub(_lookup, template_str)


def render_prompt(template: Optional[str], variables: Optional[Dict[str, str]], input_text: str) -> str:
    """Build the message sent to the target model for one test case.

    If the template contains {{input}} it is the whole message. Otherwise the
    rendered template acts as a prefix and the input follows after a blank line.
    """
    input_text = input_text or ""
    if not template:
        return input_text

    has_input = INPUT_TOKEN in template
    context = dict(variables or {})
    if has_input:
        context["input"] = input_text

    rendered = _render_template(template, context)
    if has_input or not input_text:
        return rendered
    return f"{rendered}\n\n{input_text}".strip()


def render_criterion_prompt(template: str, input_text: str, output: str, expected: Optional[str] = None) -> str:
    """Build the judge prompt for one criterion.

    Every {{#expected}}...{{/expected}} region is kept (with its tokens
    substituted) when an expected output exists and dropped otherwise. Any
    {{expected}} left outside a region becomes the expected text, or "" when
    there is none.
    """
    template = template or ""
    if expected:
        template = _EXPECTED_REGION.sub(lambda m: m.group(1), template)
    else:
        template = _EXPECTED_REGION.sub("", template)

    return _render_template(template, {
        "input": input_text or "",
        "output": output or "",
        "expected": expected or "",
    })
