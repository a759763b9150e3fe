"""Per-episode generation cost estimate (USD)."""

# Claude Sonnet: $3 / $15 per million input / output tokens
CLAUDE_INPUT_PER_TOKEN = 3.0 / 1_000_000
CLAUDE_OUTPUT_PER_TOKEN = 15.0 / 1_000_000
WEB_SEARCH_PER_CALL = 0.01
# OpenAI tts-1: $15 per million characters
TTS_PER_CHARACTER = 15.0 / 1_000_000


def calculate_generation_costs(input_tokens=0, output_tokens=0, web_searches=0, tts_characters=0):
    claude_cost = input_tokens * CLAUDE_INPUT_PER_TOKEN + output_tokens * CLAUDE_OUTPUT_PER_TOKEN
    search_cost = web_searches * WEB_SEARCH_PER_CALL
    tts_cost = tts_characters * TTS_PER_CHARACTER
    return {
        'claude': round(claude_cost, 4),
        'web_search': round(search_cost, 4),
        'tts': round(tts_cost, 4),
        'total': round(claude_cost + search_cost + tts_cost, 4),
    }
