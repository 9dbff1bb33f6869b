"""Prompt templates for generation operations."""

from __future__ import annotations

GENERATE_COMPONENT_TEMPLATE = """You are a helpful assistant that generates React components.

User request: {prompt}

Please generate a complete React component. Include all imports, proper TypeScript types, \
and make it production-ready. Return the code first, followed by a short usage note."""

IMPROVE_CODE_TEMPLATE = """Here is some code:

```
{code}
```

Please improve it based on this feedback: {feedback}

Provide the improved code, then a short list of the changes you made."""

EXPLAIN_CODE_TEMPLATE = """Please explain this code:

```
{code}
```

Include:
- What it does
- How it works
- Any issues or improvements"""

GENERATE_TESTS_TEMPLATE = """Generate test cases for this code:

```
{code}
```

Include:
- Unit tests
- Edge cases
- Error scenarios"""

VALIDATE_COMPONENT_TEMPLATE = """Validate this React component and list any issues:

```
{code}
```

Check for syntax errors, type errors, best practice violations, performance, \
security and accessibility issues.

Reply with a single JSON object and nothing else:
{{"valid": true or false, "issues": ["one sentence per issue"]}}"""


def generate_component_prompt(prompt: str) -> str:
    return GENERATE_COMPONENT_TEMPLATE.format(prompt=prompt)


def improve_code_prompt(code: str, feedback: str) -> str:
    return IMPROVE_CODE_TEMPLATE.format(code=code, feedback=feedback)


def explain_code_prompt(code: str) -> str:
    return EXPLAIN_CODE_TEMPLATE.format(code=code)


def generate_tests_prompt(code: str) -> str:
    return GENERATE_TESTS_TEMPLATE.format(code=code)


def validate_component_prompt(code: str) -> str:
    return VALIDATE_COMPONENT_TEMPLATE.format(code=code)
