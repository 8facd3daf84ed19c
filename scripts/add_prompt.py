#!/usr/bin/env python3
"""
Prompt Library CLI — add or list named prompts referenced by promptId.

Usage:
    python scripts/add_prompt.py add summarize "Summarize the following text:" --model gpt-4
    python scripts/add_prompt.py list
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run(args) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    load_settings(args.config)

    from database.prompt_library import PromptExistsError, SqlPromptLibrary
    from database.session import init_db, close_db

    await init_db()
    library = SqlPromptLibrary()
    try:
        if args.command == "add":
            try:
                prompt = await library.create_prompt(
                    args.name, args.text,
                    model_provider=args.provider, model_name=args.model,
                )
            except PromptExistsError as e:
                print(str(e), file=sys.stderr)
                return 1
            print(f"Prompt '{prompt.name}' created with ID: {prompt.id}")
        else:
            for prompt in await library.list_prompts():
                model = f" [{prompt.model_name}]" if prompt.model_name else ""
                print(f"{prompt.name}{model}: {prompt.prompt_text}")
    finally:
        await close_db()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Manage the prompt library")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add a named prompt")
    add.add_argument("name")
    add.add_argument("text")
    add.add_argument("--provider", default=None)
    add.add_argument("--model", default=None)

    sub.add_parser("list", help="List prompts, newest first")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
