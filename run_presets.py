#!/usr/bin/env python3
"""
🎯 Preset Ramp Profiles
=======================
Pre-configured stage lists for the pickup load test, from a smoke run to a
long soak.

Usage:
    python run_presets.py http://localhost:9090/api/v1 smoke
    python run_presets.py http://localhost:9090/api/v1 default --tokens benchmark/tokens.json
    python run_presets.py http://localhost:9090/api/v1 breakpoint --i-know-what-im-doing
"""

import asyncio
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from load_config import DEFAULT_STAGES, DEFAULT_TOKENS_FILE, build_config
from load_errors import LoadTestError
from pickup_load_test import EXIT_CONFIG_ERROR, configure_logging, configure_output, run_load_test

console = Console()

# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS = {
    "smoke": {
        "name": "🌱 Smoke",
        "description": "2 VUs for 20s to verify the workflow end to end",
        "stages": [
            {"duration": "5s", "target": 2},
            {"duration": "10s", "target": 2},
            {"duration": "5s", "target": 0},
        ],
    },
    "default": {
        "name": "🏃 Staged Ramp",
        "description": "Warm-up, climb, 100 VU peak and steady state, cool-down (150s)",
        "stages": DEFAULT_STAGES,
    },
    "spike": {
        "name": "📈 Traffic Spike",
        "description": "Jump from 10 to 200 VUs, hold briefly, drop back",
        "stages": [
            {"duration": "10s", "target": 10},
            {"duration": "5s", "target": 200},
            {"duration": "30s", "target": 200},
            {"duration": "5s", "target": 10},
            {"duration": "10s", "target": 0},
        ],
    },
    "soak": {
        "name": "🏃‍♀️ Soak",
        "description": "50 VUs held for 30 minutes",
        "stages": [
            {"duration": "1m", "target": 50},
            {"duration": "30m", "target": 50},
            {"duration": "1m", "target": 0},
        ],
    },
    "breakpoint": {
        "name": "☢️ Breakpoint",
        "description": "Linear climb to 1000 VUs over 10 minutes",
        "stages": [
            {"duration": "10m", "target": 1000},
            {"duration": "30s", "target": 0},
        ],
        "dangerous": True,
    },
}


def print_presets():
    console.print("\n[bold]Available Presets:[/bold]\n")
    for key, preset in PRESETS.items():
        danger_flag = "[red]⚠️ DANGEROUS[/red] " if preset.get("dangerous") else ""
        console.print(f"  [cyan]{key:<12}[/cyan] {preset['name']:<20} {danger_flag}- {preset['description']}")
    console.print("")


async def run_preset(
    base_url: str,
    preset_name: str,
    tokens_file: str = DEFAULT_TOKENS_FILE,
    dangerous_confirmed: bool = False,
    report: str = "console",
    output: Optional[str] = None,
) -> int:
    """Run a preset ramp profile. Returns the process exit status."""
    if preset_name not in PRESETS:
        console.print(f"[red]Unknown preset: {preset_name}[/red]")
        print_presets()
        return EXIT_CONFIG_ERROR

    preset = PRESETS[preset_name]

    if preset.get("dangerous") and not dangerous_confirmed:
        console.print(Panel(
            f"[bold red]⚠️  WARNING: {preset['name']} is DANGEROUS![/bold red]\n\n"
            f"{preset['description']}\n\n"
            f"This can overwhelm the Pickup Service and its database.\n\n"
            f"[yellow]Only use on systems you own or have permission to test![/yellow]",
            title="⚠️ Dangerous Preset",
            border_style="red",
        ))
        if not Confirm.ask("Do you want to proceed?"):
            console.print("[dim]Cancelled.[/dim]")
            return EXIT_CONFIG_ERROR

    console.print(Panel(
        f"[bold]{preset['name']}[/bold]\n\n{preset['description']}",
        title=f"Running Preset: {preset_name}",
        border_style="blue",
    ))

    config = build_config(
        base_url=base_url,
        tokens=tokens_file,
        stages=preset["stages"],
        test_name=f"{preset['name']} - {preset_name}",
        output=output,
    )
    return await run_load_test(config, report=report)


def _option(argv: List[str], flag: str) -> Optional[str]:
    for i, arg in enumerate(argv):
        if arg == flag and i + 1 < len(argv):
            return argv[i + 1]
    return None


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv or argv[0] in ["--help", "-h", "help"]:
        console.print("[bold]Usage:[/bold] python run_presets.py <BASE_URL> <PRESET> "
                      "[--tokens FILE] [--report console|json] [--output FILE] [--i-know-what-im-doing]")
        print_presets()
        return 0

    if len(argv) < 2:
        console.print("[red]Please provide both base URL and preset name[/red]")
        print_presets()
        return EXIT_CONFIG_ERROR

    base_url, preset = argv[0], argv[1]
    report = _option(argv, "--report") or "console"
    console.stderr = report == "json"
    configure_output(report)
    configure_logging("--verbose" in argv)

    try:
        return asyncio.run(run_preset(
            base_url,
            preset,
            tokens_file=_option(argv, "--tokens") or DEFAULT_TOKENS_FILE,
            dangerous_confirmed="--i-know-what-im-doing" in argv,
            report=report,
            output=_option(argv, "--output"),
        ))
    except LoadTestError as e:
        console.print(f"[red]Startup error: {e}[/red]")
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
