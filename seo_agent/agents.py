"""Prompt profiles for the SEO assistant and for text-mode tool calling."""

import json
from typing import Iterable

from .schemas import ToolSchema


ASSISTANT_SYSTEM = """
You are a helpful AI assistant with SEO expertise. You can analyze websites, crawl pages, and provide recommendations.
IMPORTANT: Never provide fake or made-up data. If you cannot get real data with at least 60% confidence from the tools,
inform the user that you cannot provide accurate information for their request. It's better to admit when you don't
have enough confidence in the data than to provide potentially incorrect information.
""".strip()

TOOL_EMULATION_GUIDE = """
TOOLS
You can call the tools listed below. To call one, reply with a fenced block and nothing else inside it:
```tool_call
{{"tool": "<tool name>", "args": {{...arguments...}}}}
```
Use one block per call. Arguments must be valid JSON matching the tool's parameters.
After the calls, stop and wait: the results come back in the next user message as TOOL RESULT blocks.
When no tool is needed, answer normally without any tool_call block.

Available tools:
{catalog}
""".strip()

TOOL_RESULT_TEMPLATE = "TOOL RESULT ({name}, call {call_id}):\n{content}"


def render_tool_catalog(tools: Iterable[ToolSchema]) -> str:
    lines = []
    for tool in tools:
        params = json.dumps(tool.parameters, ensure_ascii=True, sort_keys=True)
        description = tool.description or "No description."
        lines.append(f"- {tool.name}: {description}\n  parameters: {params}")
    return "\n".join(lines)


def tool_emulation_system(tools: Iterable[ToolSchema]) -> str:
    return TOOL_EMULATION_GUIDE.format(catalog=render_tool_catalog(tools))


def render_emulated_call(name: str, arguments: object) -> str:
    payload = json.dumps({"tool": name, "args": arguments}, ensure_ascii=True)
    return f"```tool_call\n{payload}\n```"
