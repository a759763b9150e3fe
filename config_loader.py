#!/usr/bin/env python3
"""
Configuration loader for Briefcast
Loads product settings, voices, limits and prompt text from config/ directory
"""

import json
from functools import lru_cache
from pathlib import Path

CONFIG_DIR = Path(__file__).parent / "config"

@lru_cache(maxsize=1)
def load_briefcast_config():
    """Load main product configuration (cached)."""
    with open(CONFIG_DIR / "briefcast.json", 'r') as f:
        return json.load(f)

@lru_cache(maxsize=1)
def load_voices_config():
    """Load TTS voice catalogue (cached)."""
    with open(CONFIG_DIR / "voices.json", 'r') as f:
        return json.load(f)

@lru_cache(maxsize=1)
def load_limits_config():
    """Load per-user-type episode limits (cached)."""
    with open(CONFIG_DIR / "limits.json", 'r') as f:
        return json.load(f)

@lru_cache(maxsize=1)
def load_prompts_config():
    """Load synthesis prompts and fixed templates (cached)."""
    with open(CONFIG_DIR / "prompts.json", 'r') as f:
        return json.load(f)

def get_voice(voice_key=None):
    """Resolve a voice key to its catalogue entry, falling back to the default voice."""
    config = load_voices_config()
    voices = config["voices"]
    if voice_key and voice_key in voices:
        return voice_key, voices[voice_key]
    default_key = config["default"]
    return default_key, voices[default_key]

def get_base_episode_limit(user_type=None):
    """Base episode quota for a user type. None means unlimited."""
    config = load_limits_config()
    limits = config["base_limits"]
    key = user_type or config["default_user_type"]
    if key not in limits:
        key = config["default_user_type"]
    return limits[key]

def get_all_config():
    """Load all configuration at once."""
    return {
        'briefcast': load_briefcast_config(),
        'voices': load_voices_config(),
        'limits': load_limits_config(),
        'prompts': load_prompts_config()
    }

if __name__ == "__main__":
    print("Testing configuration loader...")

    config = get_all_config()

    print(f"\n📻 Product: {config['briefcast']['title']}")
    print(f"🎙️  Voices: {', '.join(config['voices']['voices'].keys())}")
    print(f"📏 Limits: {config['limits']['base_limits']}")
    print(f"🤖 Prompts: {len(config['prompts'])} prompt templates")

    print("\n✅ All configs loaded successfully!")
