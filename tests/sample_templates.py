"""Chat templates shared by the compiler and API tests."""

CHATML = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\\n' + message['content'] + '<|im_end|>\\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\\n' }}{% endif %}"
)

# Renders every tool call, so parallel tool calls are supported
HERMES_2_PRO = (
    "{% if tools %}<|im_start|>system\n"
    "# Tools\n<tools>\n"
    "{% for tool in tools %}{{ tool | tojson }}\n{% endfor %}"
    "</tools>\n"
    "{% if parallel_tool_calls %}You may call several tools at once.\n{% endif %}"
    "<|im_end|>\n{% endif %}"
    "{% for message in messages %}"
    "{% if message.role == 'assistant' and message.tool_calls %}"
    "<|im_start|>assistant\n"
    "{% for tc in message.tool_calls %}"
    "<tool_call>\n{\"name\": \"{{ tc.function.name }}\", \"arguments\": "
    "{% if tc.function.arguments is string %}{{ tc.function.arguments }}"
    "{% else %}{{ tc.function.arguments | tojson }}{% endif %}"
    "}\n</tool_call>\n"
    "{% endfor %}<|im_end|>\n"
    "{% else %}"
    "<|im_start|>{{ message.role }}\n{{ message.content }}<|im_end|>\n"
    "{% endif %}"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|im_start|>assistant\n{% endif %}"
)

# Only ever renders the first tool call of a message
SINGLE_TOOL_CALL = (
    "{% for message in messages %}"
    "{% if message.role == 'assistant' and message.tool_calls %}"
    "{% set tc = message.tool_calls[0] %}"
    "<tool_call>{\"name\": \"{{ tc.function.name }}\", \"arguments\": {{ tc.function.arguments }}}</tool_call>\n"
    "{% else %}[{{ message.role }}] {{ message.content }}\n{% endif %}"
    "{% endfor %}"
    "{% if tools %}Tools: {% for tool in tools %}{{ tool.function.name }} {% endfor %}\n{% endif %}"
    "{% if parallel_tool_calls %}Parallel calls allowed.\n{% endif %}"
    "{% if add_generation_prompt %}[assistant] {% endif %}"
)

MISTRAL_NEMO = (
    "{% for message in messages %}"
    "{% if message.role == 'user' %}[INST]{{ message.content }}[/INST]"
    "{% elif message.tool_calls %}[TOOL_CALLS]{{ message.tool_calls | tojson }}"
    "{% else %}{{ message.content }}{% endif %}"
    "{% endfor %}"
    "{% if tools %}[AVAILABLE_TOOLS]{{ tools | tojson }}[/AVAILABLE_TOOLS]{% endif %}"
)

RAISING = (
    "{% for message in messages %}"
    "{% if 'forbidden' in message.content %}{{ raise_exception('Forbidden content') }}{% endif %}"
    "{{ message.content }}\n"
    "{% endfor %}"
)

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get the current weather for a city.",
        "parameters": {
            "type": "object",
            "properties": {"city": {"type": "string", "description": "City name"}},
            "required": ["city"],
        },
    },
}

TIME_TOOL = {
    "type": "function",
    "function": {
        "name": "get_time",
        "description": "Get the current time in a timezone.",
        "parameters": {
            "type": "object",
            "properties": {"tz": {"type": "string"}},
        },
    },
}


def model_metadata(template: str, **named: str) -> dict:
    """GGUF-style metadata with a default template and optional named ones."""
    meta = {
        "general.name": "test-model",
        "tokenizer.chat_template": template,
        "tokenizer.ggml.bos_token_id": "1",
        "tokenizer.ggml.eos_token_id": "2",
        "tokenizer.ggml.tokens": ["<unk>", "<s>", "</s>"],
    }
    for name, source in named.items():
        meta[f"tokenizer.chat_template.{name}"] = source
    return meta
