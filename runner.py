#!/usr/bin/env python3
"""
Conversion runner - turns a ChatGPT export into Obsidian notes.

Loads the export, converts every conversation oldest first and syncs the
notes into the output folder. Safe to re-run against the same folder.

Usage:
    python runner.py export.zip --output vault/Chats
    python runner.py export/ --output vault/Chats --dump-dir debug/
    python runner.py export.zip --output vault/Chats --created-key date
"""
import argparse
import sys
import time
from pathlib import Path

from assembler import ConversionError
from config import apply_overrides, load_config, validate_config
from obsidian_exporter import run_export
from parser import ArchiveError, StructuralError, load_conversations, open_export


def run_conversion(input_path: Path, output_dir: Path, config: dict,
                   dump_dir: Path = None) -> dict:
    """
    Convert one export into output_dir.

    Returns:
        Dict with export statistics

    Raises:
        ArchiveError: the export can't be opened or has no conversations.json
        StructuralError: conversations.json holds a malformed conversation
        ConversionError: a conversation couldn't be rendered
    """
    start_time = time.time()

    with open_export(input_path) as export_dir:
        trees = load_conversations(export_dir)
        print(f"Converting {len(trees)} conversations into {output_dir}...")
        stats = run_export(trees, output_dir, config, archive_dir=export_dir, dump_dir=dump_dir)

    elapsed = time.time() - start_time

    print()
    print("=" * 50)
    print("CONVERSION COMPLETE")
    print("=" * 50)
    print(f"Conversations: {stats['conversations']}")
    print(f"Written:       {stats['written']}")
    print(f"Unchanged:     {stats['unchanged']}")
    print(f"Renamed:       {stats['renamed']}")
    print(f"Attachments:   {stats['attachments']} copied")
    if stats['missing_attachments']:
        print(f"Missing:       {stats['missing_attachments']} attachments")
    print(f"Total time:    {elapsed:.1f}s")

    return stats


def main(argv: list[str] = None):
    parser = argparse.ArgumentParser(
        description="Convert a ChatGPT export into Obsidian Markdown notes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python runner.py export.zip --output vault/Chats
  python runner.py export/ --output vault/Chats --dump-dir debug/
  python runner.py export.zip --output vault/Chats --attachments-dir media
        """
    )

    parser.add_argument('input', type=Path,
                        help='ChatGPT export (.zip or extracted folder)')
    parser.add_argument('--output', type=Path, required=True, metavar='DIR',
                        help='Folder to write notes into')
    parser.add_argument('--dump-dir', type=Path, metavar='DIR',
                        help='Also write each conversation\'s raw JSON here')
    parser.add_argument('--attachments-dir', type=str, metavar='NAME',
                        help='Attachments subfolder of the output (default from config.json)')
    parser.add_argument('--created-key', type=str, metavar='KEY',
                        help='Frontmatter key for the creation time')
    parser.add_argument('--updated-key', type=str, metavar='KEY',
                        help='Frontmatter key for the last update time')

    args = parser.parse_args(argv)

    config = apply_overrides(
        load_config(),
        attachments_dir=args.attachments_dir,
        created_key=args.created_key,
        updated_key=args.updated_key,
    )

    is_valid, error = validate_config(config)
    if not is_valid:
        print(f"Configuration error: {error}")
        sys.exit(1)

    try:
        return run_conversion(args.input, args.output, config, dump_dir=args.dump_dir)
    except (ArchiveError, StructuralError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    except ConversionError as e:
        print(f"Error: {e}")
        print("No further conversations were processed.")
        sys.exit(1)


if __name__ == "__main__":
    main()
