#!/usr/bin/env python3
"""
Configuration management for the converter.

Handles the output naming knobs: attachments folder, frontmatter
timestamp keys, conversation URL base and filename length.
"""
import json
from pathlib import Path

CONFIG_FILE = Path(__file__).parent / "config.json"

# Frontmatter keys the converter always writes itself
FIXED_FRONTMATTER_KEYS = ("title", "conversation_id", "conversation_url", "models")

DEFAULT_CONFIG = {
    "attachments_dir": "attachments",     # subfolder of the output directory
    "created_key": "created",             # frontmatter key for create_time
    "updated_key": "updated",             # frontmatter key for update_time
    "conversation_url_base": "https://chatgpt.com/c/",
    "max_filename_length": 120
}


def load_config() -> dict:
    """
    Load configuration from config.json.
    Creates file with defaults if it doesn't exist.
    """
    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
            config = json.load(f)
        # Merge with defaults to handle new config options
        merged = {**DEFAULT_CONFIG, **config}
        return merged
    else:
        save_config(DEFAULT_CONFIG)
        return DEFAULT_CONFIG.copy()


def save_config(config: dict) -> None:
    """Save configuration to config.json."""
    with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
        json.dump(config, f, indent=2)


def apply_overrides(config: dict, **overrides) -> dict:
    """Return a copy of config with every non-None override applied."""
    merged = dict(config)
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value
    return merged


def validate_config(config: dict = None) -> tuple[bool, str]:
    """
    Validate configuration is complete and usable.
    Returns (is_valid, error_message).
    """
    if config is None:
        config = load_config()

    attachments_dir = config.get("attachments_dir")
    if not attachments_dir:
        return False, "No attachments_dir configured"
    if Path(attachments_dir).is_absolute() or len(Path(attachments_dir).parts) != 1 \
            or attachments_dir in (".", ".."):
        return False, f"attachments_dir must be a single folder name, got: {attachments_dir}"

    created_key = config.get("created_key")
    updated_key = config.get("updated_key")
    if not created_key or not updated_key:
        return False, "Both created_key and updated_key must be set"
    if created_key == updated_key:
        return False, f"created_key and updated_key must differ (both are '{created_key}')"
    for key in (created_key, updated_key):
        if key in FIXED_FRONTMATTER_KEYS:
            return False, f"Frontmatter key '{key}' is reserved"

    if not config.get("conversation_url_base"):
        return False, "No conversation_url_base configured"

    max_len = config.get("max_filename_length")
    if not isinstance(max_len, int) or max_len < 1:
        return False, f"Invalid max_filename_length: {max_len}"

    return True, ""


if __name__ == "__main__":
    # Show current config when run directly
    config = load_config()
    print("Current configuration:")
    print(json.dumps(config, indent=2))

    is_valid, error = validate_config(config)
    if is_valid:
        print("\nConfiguration is valid.")
    else:
        print(f"\nConfiguration error: {error}")
