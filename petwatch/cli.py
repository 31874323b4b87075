"""
Petwatch CLI - live pet interpretation from the command line
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import yaml
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .clip import ClipAnalyzer
from .config import CONFIG_CATEGORIES, DEFAULTS, config
from .controller import ControllerSettings, LiveSessionController
from .diagnostics import console, enable_diagnostics, metrics
from .exceptions import PetwatchError
from .frame_sampler import CaptureConstraints, FrameSampler
from .inference import InferenceClient, probe_backend
from .models import Subject
from .speech import create_engine, select_voice
from .store import SubjectStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="petwatch",
        description="Petwatch - live camera interpretation of your pets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Identify a new pet and start narrating
  petwatch live --identify --name Rex

  # Resume watching a known pet, silently, for two minutes
  petwatch live --subject 3f2a... --mute --duration 120

  # Interpret a recorded clip
  petwatch analyze rex_park.mp4 --subject 3f2a...

  # Catalog
  petwatch subjects list --format yaml

  # Check camera, speech and backend
  petwatch check all

  # Change the model and keep it
  petwatch config --set PW_MODEL llava:13b --save
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--metrics", action="store_true", help="Show metrics after execution")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command")

    live = sub.add_parser("live", help="Run a live session")
    live.add_argument("--subject", "-s", help="Track an existing subject id")
    live.add_argument("--identify", "-i", action="store_true", help="Identify a new pet first")
    live.add_argument("--name", "-n", help="Name to confirm the identification with")
    live.add_argument("--mute", "-m", action="store_true", help="Do not speak observations")
    live.add_argument("--duration", "-d", type=float, help="Stop after N seconds")
    live.add_argument("--device", help="Camera index or stream URL")
    live.add_argument("--interval-ms", type=int, dest="interval_ms", help="Cycle period in ms")

    analyze = sub.add_parser("analyze", help="Interpret a recorded clip")
    analyze.add_argument("clip", help="Video file")
    analyze.add_argument("--subject", "-s", help="Subject id to file the result under")
    analyze.add_argument("--prompt", "-p", help="Custom prompt")

    output = argparse.ArgumentParser(add_help=False)
    output.add_argument(
        "--format", "-f", choices=["table", "json", "yaml"], default="table", help="Output format"
    )

    subjects = sub.add_parser("subjects", help="Manage the pet catalog")
    subjects.set_defaults(format="table")
    subjects_sub = subjects.add_subparsers(dest="action")
    subjects_sub.add_parser("list", parents=[output], help="List subjects")
    show = subjects_sub.add_parser("show", parents=[output], help="Show one subject with its observations")
    show.add_argument("id")
    rename = subjects_sub.add_parser("rename", help="Rename a subject")
    rename.add_argument("id")
    rename.add_argument("name")
    delete = subjects_sub.add_parser("delete", help="Delete a subject")
    delete.add_argument("id")

    check = sub.add_parser("check", help="Run diagnostic checks")
    check.add_argument("target", choices=["camera", "tts", "backend", "all"], nargs="?", default="all")

    config_cmd = sub.add_parser("config", help="Show or change settings")
    config_cmd.add_argument("--set", nargs=2, metavar=("KEY", "VALUE"), help="Set a configuration value")
    config_cmd.add_argument("--save", action="store_true", help="Save configuration to .env")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.debug:
        enable_diagnostics(level="DEBUG")
    else:
        enable_diagnostics()

    try:
        if args.command == "live":
            code = asyncio.run(run_live(args))
        elif args.command == "analyze":
            code = asyncio.run(run_analyze(args))
        elif args.command == "subjects":
            code = run_subjects(args)
        elif args.command == "config":
            code = run_config(args)
        else:
            code = run_check(args.target)

        if args.metrics:
            metrics.print_summary()
        return code

    except PetwatchError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted by user")
        return 130


# ----------------------------------------------------------------------
# live
# ----------------------------------------------------------------------

class LiveRenderer:
    """Prints phase changes and new observations as the session runs."""

    def __init__(self):
        self.phase = None
        self.latest_text = ""

    def __call__(self, snapshot: Dict[str, Any]):
        if snapshot["phase"] != self.phase:
            self.phase = snapshot["phase"]
            console.print(f"[dim]● {self.phase.replace('_', ' ')}[/dim]")

        text = snapshot["latest_text"]
        if text and text != self.latest_text:
            style = "red" if snapshot["last_error"] and text.startswith("Error") else "green"
            console.print(f"[{style}]{text}[/{style}]")
        self.latest_text = text


async def run_live(args) -> int:
    settings = ControllerSettings.from_env()
    if args.interval_ms:
        settings.cycle_interval_ms = args.interval_ms

    constraints = CaptureConstraints.from_env()
    if args.device is not None:
        constraints.device = int(args.device) if args.device.isdigit() else args.device

    controller = LiveSessionController(settings=settings, constraints=constraints)
    controller.add_listener(LiveRenderer())

    async with controller:
        if args.mute:
            controller.set_muted(True)
        if args.subject:
            await controller.select_subject(args.subject)

        await controller.start_camera()

        if args.identify and not args.subject:
            await _identify(controller, args.name)

        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            console.print("[dim]Press Ctrl+C to stop[/dim]")
            await asyncio.Event().wait()

    return 0


async def _identify(controller: LiveSessionController, name: Optional[str]):
    pending = await controller.request_identification()
    if pending is None:
        return

    console.print(Panel(
        f"[bold]{pending.category}[/bold] ({pending.sub_category})\n{pending.description}",
        title="Identified",
    ))

    if name is None:
        loop = asyncio.get_running_loop()
        name = await loop.run_in_executor(
            None, lambda: Prompt.ask("Name this pet (blank to discard)", default=pending.proposed_name)
        )

    if not (name or "").strip():
        await controller.discard()
        console.print("Identification discarded")
        return

    subject = await controller.confirm(name)
    if subject is not None:
        console.print(f"Now tracking [bold]{subject.name}[/bold] [dim]{subject.id}[/dim]")


# ----------------------------------------------------------------------
# analyze
# ----------------------------------------------------------------------

async def run_analyze(args) -> int:
    store = SubjectStore.from_env()
    async with InferenceClient() as client:
        with console.status(f"Analyzing {args.clip}..."):
            result = await ClipAnalyzer(client, store).analyze(args.clip, args.subject, args.prompt)

    if result.created_subject:
        console.print(f"Created [bold]{result.subject.name}[/bold] [dim]{result.subject.id}[/dim]")
    console.print(Panel(result.text, title=f"{result.subject.name} · {result.frames_used} frames"))
    return 0


# ----------------------------------------------------------------------
# subjects
# ----------------------------------------------------------------------

def subject_to_dict(subject: Subject, with_observations: bool = False) -> Dict[str, Any]:
    data = subject.model_dump(mode="json", exclude={"thumbnail", "observations"})
    data["has_thumbnail"] = subject.thumbnail is not None
    data["observation_count"] = len(subject.observations)
    if with_observations:
        data["observations"] = [o.model_dump(mode="json") for o in subject.observations]
    return data


def format_output(data: Any, fmt: str) -> str:
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return json.dumps(data, indent=2, ensure_ascii=False)


def run_subjects(args, store: Optional[SubjectStore] = None) -> int:
    store = store or SubjectStore.from_env()
    action = args.action or "list"

    if action == "list":
        subjects = store.list()
        if args.format != "table":
            print(format_output([subject_to_dict(s) for s in subjects], args.format))
            return 0

        table = Table(title="Pets")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Category")
        table.add_column("Breed")
        table.add_column("Observations", justify="right", style="green")
        for s in subjects:
            table.add_row(s.id, s.name, s.category or "-", s.sub_category or "-", str(len(s.observations)))
        console.print(table)
        return 0

    if action == "show":
        subject = store.get(args.id)
        if subject is None:
            console.print(f"[red]No such subject:[/red] {args.id}")
            return 1
        if args.format != "table":
            print(format_output(subject_to_dict(subject, True), args.format))
            return 0

        console.print(Panel(
            f"{subject.category or 'Unknown'} ({subject.sub_category or 'Unknown'})\n"
            f"[dim]{subject.id} · since {subject.created_at:%Y-%m-%d}[/dim]",
            title=subject.name,
        ))
        table = Table()
        table.add_column("When", style="dim")
        table.add_column("Origin", style="cyan")
        table.add_column("Observation")
        for o in subject.observations:
            origin = o.origin.value + (f" ({o.source_file})" if o.source_file else "")
            table.add_row(f"{o.created_at:%Y-%m-%d %H:%M}", origin, o.text)
        console.print(table)
        return 0

    if action == "rename":
        name = args.name.strip()
        if not name:
            console.print("[red]Name cannot be blank[/red]")
            return 1
        subject = store.update(args.id, name=name)
        if subject is None:
            console.print(f"[red]No such subject:[/red] {args.id}")
            return 1
        console.print(f"Renamed to [bold]{subject.name}[/bold]")
        return 0

    if action == "delete":
        if not store.delete(args.id):
            console.print(f"[red]No such subject:[/red] {args.id}")
            return 1
        console.print(f"Deleted {args.id}")
        return 0

    return 1


# ----------------------------------------------------------------------
# check
# ----------------------------------------------------------------------

def run_check(target: str) -> int:
    """Run diagnostic checks for camera, TTS, or the AI backend.

    Returns:
        0 if all checks pass, 1 otherwise
    """
    results: Dict[str, str] = {}
    all_ok = True

    if target in ("camera", "all"):
        sampler = FrameSampler()
        constraints = CaptureConstraints.from_env()
        try:
            handle = sampler.start_capture(constraints)
            try:
                image = sampler.capture_snapshot(handle)
                results["camera"] = f"✅ {constraints.device!r} {image.width}x{image.height} ({len(image.data)} bytes)"
            finally:
                sampler.stop_capture(handle)
        except PetwatchError as e:
            results["camera"] = f"❌ {e}"
            all_ok = False

    if target in ("tts", "all"):
        engine = create_engine()
        if engine is None:
            results["tts"] = "❌ no engine (install espeak or pip install pyttsx3)"
            all_ok = False
        else:
            locale = config.get("PW_TTS_LOCALE", "en-US")
            voices = engine.list_voices()
            voice = select_voice(voices, locale)
            chosen = voice.name if voice else "engine default"
            results["tts"] = f"✅ {type(engine).__name__}, {len(voices)} voices, {locale} -> {chosen}"

    if target in ("backend", "all"):
        probe = probe_backend()
        label = f"{probe['provider']} / {probe['model']}"
        if probe["reachable"]:
            extra = ""
            if probe.get("model_available") is False:
                extra = " [yellow](model not pulled)[/yellow]"
            results["backend"] = f"✅ {label}{extra}"
        else:
            reason = probe.get("error") or f"HTTP {probe.get('status')}"
            results["backend"] = f"❌ {label}: {reason}"
            all_ok = False

    table = Table(title="Petwatch Diagnostics")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    for key, value in results.items():
        table.add_row(key, value)
    console.print(table)

    return 0 if all_ok else 1


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------

_SECRET_KEYS = {"PW_OPENAI_API_KEY"}


def run_config(args) -> int:
    """Show, set or persist settings (``--set KEY VALUE [--save]``, ``--save``)."""
    if args.set:
        key, value = args.set
        if key not in DEFAULTS:
            console.print(f"[red]Unknown setting:[/red] {key}")
            return 1
        config.set(key, value)
        console.print(f"Set {key}={value}")
        if args.save:
            config.save(keys_only=[key])
            console.print("Saved to .env")
        else:
            console.print("[dim]Use --save to persist to .env[/dim]")
        return 0

    if args.save:
        config.save()
        console.print("Configuration saved to .env")
        return 0

    current = config.to_dict()
    table = Table(title="Petwatch Configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Description", style="dim")
    for category, items in CONFIG_CATEGORIES.items():
        table.add_row(f"[bold]{category}[/bold]", "", "")
        for key, _label, description in items:
            value = current.get(key, "")
            if key in _SECRET_KEYS and value:
                value = value[:4] + "..."
            table.add_row(key, value, description)
    console.print(table)
    return 0


if __name__ == "__main__":
    sys.exit(main())
