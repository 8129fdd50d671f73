import argparse
import json
import logging
from typing import List, Optional

from .coverage import CoverageTracker
from .goal_policy import ExplorationConfig
from .state import ExplorationState

PRESETS = {
    "default": ExplorationConfig,
    "quick_scan": ExplorationConfig.quick_scan,
    "deep_map": ExplorationConfig.deep_map,
    "complete_coverage": ExplorationConfig.complete_coverage,
}


def _load_state(path: str) -> ExplorationState:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    # knowledge.json wraps the state; a bare state dump is accepted too
    return ExplorationState.from_json(data.get("state", data))


def _cmd_config(args: argparse.Namespace) -> int:
    config = PRESETS[args.preset]()
    if args.env:
        config = ExplorationConfig.from_env(config, dotenv_path=args.dotenv)
    print(json.dumps(config.to_json(), indent=2))
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    state = _load_state(args.knowledge)
    graph = state.navigation_graph
    stats = graph.get_stats()
    metrics = CoverageTracker().update(state)

    print(f"Package: {state.package_name} ({state.status.value}, pass {state.current_pass})")
    print(f"Screens: {stats.total_screens} ({stats.fully_explored_screens} fully explored)")
    print(f"Transitions: {stats.total_transitions}")
    print(f"Conditional elements: {stats.conditional_elements}")
    print(f"Blocker screens: {stats.blocker_screens}")
    print(metrics.summary())
    print(graph.conditional_summary())
    print(graph.blocker_summary())
    problematic = graph.get_problematic_screens()
    if problematic:
        print(f"=== PROBLEMATIC SCREENS ({len(problematic)}) ===")
        for screen_id, reason in problematic.items():
            print(f"  {screen_id[:16]}: {reason}")
    return 0


def _format_path(path) -> str:
    if path is None:
        return "no path"
    if not path:
        return "already there"
    return " -> ".join(f"{step.screen_id[:8]}[{step.element_id}]" for step in path)


def _cmd_path(args: argparse.Namespace) -> int:
    state = _load_state(args.knowledge)
    graph = state.navigation_graph
    known = graph.get_all_screens()
    for screen_id in (args.from_screen, args.to_screen):
        if screen_id not in known:
            print(f"Unknown screen: {screen_id}")
            return 1

    print("Optimal:  ", _format_path(graph.find_optimal_path(args.from_screen, args.to_screen)))
    print("Fewest hops:", _format_path(graph.find_path(args.from_screen, args.to_screen)))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Inspect App-Explorer configurations and saved runs")
    sub = parser.add_subparsers(dest="command", required=True)

    p_config = sub.add_parser("config", help="Print a configuration as JSON")
    p_config.add_argument("--preset", choices=sorted(PRESETS), default="default", help="Goal preset to start from")
    p_config.add_argument("--env", action="store_true", help="Overlay APP_EXPLORER_* environment variables")
    p_config.add_argument("--dotenv", default=None, help="Path of a .env file to load with --env")
    p_config.set_defaults(func=_cmd_config)

    p_stats = sub.add_parser("stats", help="Graph and coverage statistics of a saved run")
    p_stats.add_argument("knowledge", help="Path of a knowledge.json written by a run")
    p_stats.set_defaults(func=_cmd_stats)

    p_path = sub.add_parser("path", help="Optimal and fewest-hop paths between two screens of a saved run")
    p_path.add_argument("knowledge", help="Path of a knowledge.json written by a run")
    p_path.add_argument("--from", dest="from_screen", required=True, help="Start screen id")
    p_path.add_argument("--to", dest="to_screen", required=True, help="Destination screen id")
    p_path.set_defaults(func=_cmd_path)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
