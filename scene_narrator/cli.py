"""CLI interface with subcommand routing."""

import argparse
import asyncio
import json
import logging
import os
import sys

from scene_narrator.chunker import split
from scene_narrator.config import NormalizationPolicy
from scene_narrator.constants import CHUNK_MAX_LEN, ROLES, VERSION
from scene_narrator.events import EventBus
from scene_narrator.models import PlayerPhase
from scene_narrator.normalize import speech_text
from scene_narrator.player import Player
from scene_narrator.rules import (
    RuleStore,
    compile_rules,
    load_rules_file,
    parse_rules_compiled,
)
from scene_narrator.scenes import SceneFormatError, load_scenes
from scene_narrator.tts import EdgeTTSBackend

# Events echoed while playing
_PRINTED_EVENTS = ("page", "tts-error", "stop-confirm", "activated", "end")


def _require_file(path: str) -> None:
    if not os.path.exists(path):
        print(f"Error: File not found: {path}", file=sys.stderr)
        raise SystemExit(1)


def _load_rule_store(path):
    if not path:
        return None
    _require_file(path)
    try:
        return RuleStore(load_rules_file(path))
    except (ValueError, OSError) as e:
        print(f"Error: Could not read rules from {path}: {e}", file=sys.stderr)
        raise SystemExit(1)


def _load_policy(path):
    if not path:
        return None
    _require_file(path)
    with open(path, encoding="utf-8") as f:
        try:
            return NormalizationPolicy.from_dict(json.load(f))
        except json.JSONDecodeError as e:
            print(f"Error: Invalid policy JSON in {path}: {e}", file=sys.stderr)
            raise SystemExit(1)


def cmd_normalize(args):
    """Print the speech text for a string."""
    text = speech_text(args.text, args.role, _load_policy(args.policy), _load_rule_store(args.rules))
    print(text)


def cmd_chunks(args):
    """Print the chunks a string is spoken in."""
    if args.max_len < 1:
        print("Error: --max-len must be at least 1", file=sys.stderr)
        raise SystemExit(1)
    text = speech_text(args.text, args.role, _load_policy(args.policy), _load_rule_store(args.rules))
    chunks = [c.strip() for c in split(text, args.max_len) if c.strip()]
    for i, chunk in enumerate(chunks, start=1):
        print(f"{i:3d} [{len(chunk):3d}] {chunk}")


def cmd_rules_check(args):
    """Validate a rule file, optionally against its compiled JSON."""
    _require_file(args.file)
    errors = []
    try:
        rule_set = load_rules_file(args.file, errors)
    except ValueError as e:
        print(f"Error: Could not parse {args.file}: {e}", file=sys.stderr)
        raise SystemExit(1)
    store = RuleStore(rule_set)
    for rule, reason in store.dropped:
        errors.append(f"invalid pattern /{rule.pattern}/{rule.flags}: {reason}")

    if args.compiled:
        _require_file(args.compiled)
        with open(args.compiled, encoding="utf-8") as f:
            compiled = parse_rules_compiled(json.load(f), errors)
        if dict(compiled.literals) != dict(rule_set.literals):
            unmatched = set(dict(rule_set.literals)) ^ set(dict(compiled.literals))
            errors.append(f"literal rules differ from {args.compiled} ({len(unmatched)} keys not in both)")
        if compiled.patterns != rule_set.patterns:
            errors.append(f"pattern rules differ from {args.compiled}")

    if errors:
        for message in errors:
            print(f"Error: {message}", file=sys.stderr)
        raise SystemExit(1)
    print(f"[OK] {args.file}: {len(rule_set.literals)} literal, {len(rule_set.patterns)} pattern rules")


def cmd_rules_compile(args):
    """Write the compiled JSON form of a rule file."""
    _require_file(args.file)
    rule_set = load_rules_file(args.file)
    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(compile_rules(rule_set), f, ensure_ascii=False, indent=2)
    print(f"[OK] Wrote {args.out} with {len(rule_set)} rules.")


def _print_event(event):
    if event.name not in _PRINTED_EVENTS:
        return
    p = event.payload
    if event.name == "page":
        print(f"  Scene {p['index'] + 1}/{p['total']}")
    elif event.name == "tts-error":
        print(f"  [tts-error] {p['role']}: {p['reason']}")
    elif event.name == "stop-confirm":
        print(f"  Stopped ({p['context']}, {p['latency_ms']} ms)")
    elif event.name == "end":
        print("  End of scenes.")


async def _run_player(player: Player, start: int) -> None:
    await player.goto(start)
    # placeholders are gates for a viewer; nobody is watching here
    while player.phase is PlayerPhase.AWAITING_ACTIVATION:
        await player.activate()


def cmd_play(args):
    """Narrate a scene file from start to end."""
    _require_file(args.scenes)
    try:
        doc = load_scenes(args.scenes)
    except SceneFormatError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    if not doc.scenes:
        print("Error: Scene file has no scenes.", file=sys.stderr)
        raise SystemExit(1)
    if not 0 <= args.start < len(doc.scenes):
        print(f"Error: --start must be between 0 and {len(doc.scenes) - 1}", file=sys.stderr)
        raise SystemExit(1)
    if args.track and args.muted:
        print("Error: --track needs speech output (drop --muted).", file=sys.stderr)
        raise SystemExit(1)

    config = doc.player_config()
    if args.voice:
        config.default_voice = args.voice
    backend = None if args.muted else EdgeTTSBackend(clip_dir=args.clips, default_voice=config.default_voice)

    events = EventBus()
    events.subscribe(_print_event)
    player = Player(
        doc.scenes,
        backend=backend,
        config=config,
        rules=_load_rule_store(args.rules),
        events=events,
        global_advance=doc.advance,
    )

    print(f"Playing {args.scenes} ({len(doc.scenes)} scenes)")
    asyncio.run(_run_player(player, args.start))

    if args.track:
        backend.export_track(args.track, title=doc.meta.get("title"))
        print(f"Narration track: {args.track}")


def _add_text_options(p):
    p.add_argument("text", help="Text to process")
    p.add_argument("--role", default="narration", choices=ROLES, help="Role the text is spoken as")
    p.add_argument("--rules", help="Rule file (.txt line form or compiled .json)")
    p.add_argument("--policy", help="JSON file with normalization policy options")


def main():
    parser = argparse.ArgumentParser(
        prog="scene-narrator",
        description="Narrate scene files with speech synthesis",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # normalize
    normalize_parser = subparsers.add_parser("normalize", help="Show the speech text for a string")
    _add_text_options(normalize_parser)
    normalize_parser.set_defaults(func=cmd_normalize)

    # chunks
    chunks_parser = subparsers.add_parser("chunks", help="Show how a string is chunked for speech")
    _add_text_options(chunks_parser)
    chunks_parser.add_argument("--max-len", type=int, default=CHUNK_MAX_LEN, help="Maximum chunk length")
    chunks_parser.set_defaults(func=cmd_chunks)

    # rules
    rules_parser = subparsers.add_parser("rules", help="Check or compile rule files")
    rules_sub = rules_parser.add_subparsers(dest="rules_command")
    check_parser = rules_sub.add_parser("check", help="Validate a rule file")
    check_parser.add_argument("file", help="Rule file")
    check_parser.add_argument("--compiled", help="Compiled JSON that must match the rule file")
    check_parser.set_defaults(func=cmd_rules_check)
    compile_parser = rules_sub.add_parser("compile", help="Write the compiled JSON form")
    compile_parser.add_argument("file", help="Rule file")
    compile_parser.add_argument("out", help="Output JSON path")
    compile_parser.set_defaults(func=cmd_rules_compile)

    # play
    play_parser = subparsers.add_parser("play", help="Narrate a scenes.json file")
    play_parser.add_argument("scenes", help="Path to scenes.json")
    play_parser.add_argument("--rules", help="Rule file (.txt line form or compiled .json)")
    play_parser.add_argument("--clips", help="Directory to keep synthesized clips in")
    play_parser.add_argument("--track", help="Write all clips to one MP3 at this path")
    play_parser.add_argument("--start", type=int, default=0, help="Scene index to start from")
    play_parser.add_argument("--voice", help="Default voice (edge-tts short name)")
    play_parser.add_argument("--muted", action="store_true", help="No speech; timed waits only")
    play_parser.set_defaults(func=cmd_play)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command or not hasattr(args, "func"):
        parser.print_help()
        return

    args.func(args)
