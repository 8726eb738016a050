#!/usr/bin/env python3
"""
memctl - Memory monitor control CLI for membound

Usage:
    memctl stats [--config FILE] [--preset NAME] [--json]
    memctl watch [--samples N] [--interval S] [--config FILE]
    memctl presets
    memctl config [--config FILE] [--preset NAME] [--format yaml|json]

Exit codes:
    0   success
    2   invalid configuration
"""

import argparse
import json
import sys
import time
from typing import Dict, List, Optional

import yaml

from ..config import MonitorConfig, get_preset, list_presets, load_config
from ..exceptions import ConfigValidationError
from ..logging_config import setup_logging
from ..memory_monitor import MemoryMonitor


# ANSI colors
class Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    GRAY = '\033[90m'

    @classmethod
    def disable(cls):
        for attr in ['RESET', 'BOLD', 'RED', 'GREEN', 'YELLOW', 'GRAY']:
            setattr(cls, attr, '')


STATUS_COLORS = {
    'normal': 'GREEN',
    'warning': 'YELLOW',
    'critical': 'RED',
    'unbounded': 'GRAY',
}


def _resolve_config(args) -> MonitorConfig:
    if getattr(args, 'preset', None):
        config = get_preset(args.preset)
        if getattr(args, 'config', None):
            overrides = load_config(args.config).to_dict()
            defaults = MonitorConfig().to_dict()
            changed = {k: v for k, v in overrides.items() if v != defaults[k]}
            config = config.replace(**changed)
        return config
    return load_config(getattr(args, 'config', None))


def _fmt_pct(value: Optional[float]) -> str:
    return f"{value:5.1f}%" if value is not None else "  n/a "


def format_stats(stats: Dict) -> str:
    """Human-readable rendering of get_current_stats()."""
    if not stats.get('available'):
        return "No memory sample available"

    status = stats.get('status', 'normal')
    color = getattr(Colors, STATUS_COLORS.get(status, 'RESET'))
    limit = f"{stats['limit_mb']:.1f} MB" if stats.get('limit_mb') else "unbounded"

    lines = [
        f"{Colors.BOLD}Memory{Colors.RESET}  {stats['total_usage_mb']:.1f} MB of {limit}",
        f"Usage       {_fmt_pct(stats.get('usage_percentage'))}  "
        f"[{color}{status}{Colors.RESET}]",
        f"Efficiency  {stats['efficiency_score']:5.1f}",
        f"As of       {stats['data_as_of']}" + ("  (stale)" if stats.get('stale') else ""),
    ]

    components = stats.get('component_breakdown') or {}
    if components:
        lines.append("Components:")
        percentages = stats.get('component_percentages', {})
        for name in sorted(components, key=components.get, reverse=True):
            lines.append(
                f"  {name:20} {components[name] / (1024 * 1024):8.1f} MB "
                f"{percentages.get(name, 0.0):5.1f}%"
            )
    return '\n'.join(lines)


def format_sample_line(index: int, stats: Dict) -> str:
    status = stats.get('status', 'normal')
    color = getattr(Colors, STATUS_COLORS.get(status, 'RESET'))
    return (
        f"[{index:3d}] {stats['total_usage_mb']:8.1f} MB "
        f"{_fmt_pct(stats.get('usage_percentage'))} "
        f"eff={stats['efficiency_score']:5.1f} {color}{status}{Colors.RESET}"
    )


def cmd_stats(args) -> int:
    monitor = MemoryMonitor(config=_resolve_config(args))
    monitor.force_sample()
    stats = monitor.get_current_stats()

    if args.json:
        print(json.dumps(stats, indent=2, default=str))
    else:
        print(format_stats(stats))
    return 0


def cmd_watch(args) -> int:
    config = _resolve_config(args)
    monitor = MemoryMonitor(config=config)
    interval = args.interval if args.interval is not None else config.poll_interval_seconds

    try:
        for i in range(args.samples):
            if monitor.force_sample() is not None:
                print(format_sample_line(i, monitor.get_current_stats()))
            else:
                print(f"[{i:3d}] sample failed")
            if i < args.samples - 1:
                time.sleep(interval)
    except KeyboardInterrupt:
        pass

    alerts = monitor.get_active_alerts()
    if alerts:
        print(f"\n{Colors.BOLD}Active alerts:{Colors.RESET}")
        for alert in alerts:
            print(f"  [{alert['severity']}] {alert['message']}")
    return 0


def cmd_presets(args) -> int:
    presets: List[Dict[str, str]] = list_presets()
    width = max(len(p['name']) for p in presets)
    for preset in presets:
        print(f"{Colors.BOLD}{preset['name']:{width}}{Colors.RESET}  {preset['description']}")
    return 0


def cmd_config(args) -> int:
    config = _resolve_config(args).to_dict()
    if args.format == 'json':
        print(json.dumps(config, indent=2))
    else:
        print(yaml.safe_dump(config, sort_keys=False).rstrip())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memctl",
        description="Inspect membound memory monitoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  memctl stats --json
  memctl watch --samples 10 --interval 2
  memctl config --preset production --format json
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose logging")
    parser.add_argument("--no-color", action="store_true",
                        help="Disable color output")

    sub = parser.add_subparsers(dest="command")
    sub.required = True

    def add_config_options(p):
        p.add_argument("--config", "-c", type=str,
                       help="YAML or JSON config file")
        p.add_argument("--preset", "-p", type=str,
                       help="Named configuration preset")

    p_stats = sub.add_parser("stats", help="Sample once and print current stats")
    add_config_options(p_stats)
    p_stats.add_argument("--json", action="store_true", help="Print JSON")
    p_stats.set_defaults(func=cmd_stats)

    p_watch = sub.add_parser("watch", help="Sample repeatedly and print each sample")
    add_config_options(p_watch)
    p_watch.add_argument("--samples", "-n", type=int, default=10,
                         help="Number of samples (default: 10)")
    p_watch.add_argument("--interval", "-i", type=float,
                         help="Seconds between samples (default: poll interval)")
    p_watch.set_defaults(func=cmd_watch)

    p_presets = sub.add_parser("presets", help="List configuration presets")
    p_presets.set_defaults(func=cmd_presets)

    p_config = sub.add_parser("config", help="Print the effective configuration")
    add_config_options(p_config)
    p_config.add_argument("--format", "-f", choices=['yaml', 'json'], default='yaml',
                          help="Output format")
    p_config.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color or not sys.stdout.isatty():
        Colors.disable()

    if args.verbose:
        setup_logging(verbose=True)

    try:
        return args.func(args)
    except ConfigValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
