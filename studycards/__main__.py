"""Terminal front end for StudyCards.

Usage:
    python -m studycards generate notes.txt          Generate and review flashcards
    python -m studycards generate notes.txt --yes    Accept every candidate unedited
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from studycards.api_client import StudyCardsClient
from studycards.flow import GenerationFlow
from studycards.store import CandidateView, GenerationStore, Step

DEFAULT_API_URL = "http://localhost:8000"


def print_candidates(candidates: list[CandidateView]) -> None:
    for i, candidate in enumerate(candidates, 1):
        print(f"  [{i}] ({candidate.source})")
        print(f"      Q: {candidate.front}")
        print(f"      A: {candidate.back}")
        for error in candidate.errors:
            print(f"      ! {error}")
    print()


def pick(store: GenerationStore, arg: str) -> CandidateView | None:
    if not arg.isdigit() or not 1 <= int(arg) <= len(store.candidates):
        print(f"  No candidate numbered {arg!r}.")
        return None
    return store.candidates[int(arg) - 1]


def edit(store: GenerationStore, candidate: CandidateView) -> None:
    front = input(f"  Front [{candidate.front}]: ").strip()
    back = input(f"  Back  [{candidate.back}]: ").strip()
    store.update_candidate(candidate.id, front=front or None, back=back or None)
    print(f"  Now {candidate.source}.")
    for error in candidate.errors:
        print(f"  ! {error}")
    print()


async def review_loop(flow: GenerationFlow) -> bool:
    """Interactive review; returns True once the flashcards are saved."""
    store = flow.store
    print("  Commands: l=list  e N=edit  o N=restore original  r N=reject  s=save  q=quit\n")
    print_candidates(store.candidates)

    while store.step == Step.REVIEW:
        command, _, arg = input("  > ").strip().partition(" ")
        command, arg = command.lower(), arg.strip()

        if command == "q":
            print("\n  Discarded. Nothing was saved.")
            return False
        if command == "l":
            print_candidates(store.candidates)
        elif command in ("e", "o", "r"):
            candidate = pick(store, arg)
            if candidate is None:
                continue
            if command == "e":
                edit(store, candidate)
            elif command == "o":
                store.update_candidate(
                    candidate.id, front=candidate.original_front, back=candidate.original_back
                )
                print("  Restored.\n")
            else:
                store.remove_candidate(candidate.id)
                print(f"  Rejected. {len(store.candidates)} left.\n")
        elif command == "s":
            saved = await flow.save()
            if saved is not None:
                print(f"\n  Saved {saved['created_count']} flashcards.")
                return True
            print(f"  {store.error}\n")
        else:
            print("  Unknown command.")

    return False


async def cmd_generate(args: argparse.Namespace) -> int:
    source_text = Path(args.file).read_text(encoding="utf-8")

    async with StudyCardsClient(args.api_url, user_id=args.user) as client:
        flow = GenerationFlow(GenerationStore(), client)

        print(f"\n  Generating flashcards from {args.file} ({len(source_text)} characters)...")
        if not await flow.generate(source_text):
            print(f"  {flow.store.error}")
            return 1

        store = flow.store
        print(f"  Generation {store.generation_id}: {len(store.candidates)} candidates\n")

        if args.yes:
            print_candidates(store.candidates)
            saved = await flow.save()
            if saved is None:
                print(f"  {store.error}")
                return 1
            print(f"  Saved {saved['created_count']} flashcards.")
            return 0

        return 0 if await review_loop(flow) else 1


def main() -> None:
    """Entry point for the StudyCards CLI."""
    parser = argparse.ArgumentParser(
        prog="studycards",
        description="Generate flashcards from text with AI and review them before saving",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("STUDYCARDS_API_URL", DEFAULT_API_URL),
        help=f"Server base URL (default: $STUDYCARDS_API_URL or {DEFAULT_API_URL})",
    )
    parser.add_argument(
        "--user",
        default=os.environ.get("STUDYCARDS_USER_ID"),
        help="User id sent as X-User-Id (default: $STUDYCARDS_USER_ID)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    generate_parser = subparsers.add_parser("generate", help="Generate flashcards from a text file")
    generate_parser.add_argument("file", help="UTF-8 text file, 1000 to 5000 characters")
    generate_parser.add_argument("-y", "--yes", action="store_true", help="Save all candidates unedited")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    if not args.command:
        parser.print_help()
        return

    sys.exit(asyncio.run(cmd_generate(args)))


if __name__ == "__main__":
    main()
