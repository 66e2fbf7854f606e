#!/usr/bin/env python3
"""storyloop CLI entrypoint."""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

from storyloop.agents.claude import ClaudeAgent
from storyloop.git.vcs import GitVcs
from storyloop.graph.layers import calculate_depths, find_cycles, group_by_depth
from storyloop.lib.agents_config import check_binary_available, load_agents_config
from storyloop.lib.config import RunnerConfig, load_runner_config
from storyloop.lib.constants import EXIT_BLOCKED, EXIT_CONFIG, EXIT_ERROR, EXIT_GATE, EXIT_OK
from storyloop.lib.github import check_gh_available
from storyloop.lib.types import CheckpointStage, SignalKind
from storyloop.lib.validate import ValidationError
from storyloop.selection.scoring import scored_candidates, select_next
from storyloop.state.locking import LockTimeout, step_lock
from storyloop.state.store import JsonStateStore, StoreError
from storyloop.workflow.engine import GATE_STATUSES, execution_status, run_loop
from storyloop.workflow.orchestrator import ExecutionStatus, Orchestrator, StepResult

logger = logging.getLogger(__name__)


def load_config(args) -> RunnerConfig:
    project_dir = Path(args.project_dir).resolve()
    try:
        return load_runner_config(project_dir)
    except ValueError as e:
        print(f"ERROR: Invalid configuration: {e}")
        sys.exit(EXIT_CONFIG)


def build_orchestrator(args, config: RunnerConfig, cancel: threading.Event | None = None) -> Orchestrator:
    """Wire the JSON store, Claude agent and git/gh collaborators."""
    project_dir = Path(args.project_dir).resolve()
    agents_config = load_agents_config(project_dir)
    if not check_binary_available(agents_config, "implement"):
        logger.warning("Agent binary for 'implement' not found in PATH")
    gh_ok, gh_msg = check_gh_available()
    if not gh_ok:
        logger.warning(f"Reviews cannot be opened or merged: {gh_msg}")

    agent = ClaudeAgent(
        agents_config,
        # So `storyloop signal` run by the agent writes to this state dir
        extra_env={"STORYLOOP_STATE_DIR": str(config.state_dir)},
        log_dir=config.state_dir / "logs",
    )
    return Orchestrator(
        store=JsonStateStore(config.state_dir),
        agent=agent,
        vcs=GitVcs(config.repo_path),
        config=config,
        cancel=cancel,
    )


def gate_response_from_args(args) -> dict | None:
    if not getattr(args, 'action', None):
        return None
    response = {"action": args.action}
    for name in ("report", "clarification", "feedback"):
        value = getattr(args, name, None)
        if value is not None:
            response[name] = value
    return response


def exit_code_for(result: StepResult) -> int:
    if result.status in GATE_STATUSES:
        return EXIT_GATE
    if result.status is ExecutionStatus.BLOCKED:
        return EXIT_BLOCKED
    if result.status is ExecutionStatus.ERROR:
        return EXIT_ERROR
    return EXIT_OK


def print_result(result: StepResult, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print(f"Status: {result.status.value}" + (f" ({result.item_id})" if result.item_id else ""))
    if result.event:
        print(f"  {result.event.message}")
    gate = result.gate_request
    if gate is None:
        return
    if gate.deps:
        print("\nExternal dependencies:")
        for dep in gate.deps:
            print(f"  - {dep.get('name')}: {dep.get('description', '')}")
        print("\nNext: storyloop step --action submit --report '...'  |  --action skip")
    if gate.questions:
        print("\nQuestions:")
        for question in gate.questions:
            print(f"  - {question}")
        print("\nNext: storyloop step --action clarify --clarification '...'  |  --action auto  |  --action skip")
    if gate.review_url:
        print(f"\nReview: {gate.review_url}")
        print("\nNext: storyloop step --action merge  |  --action feedback --feedback '...'")


@contextmanager
def cancel_on_interrupt():
    """First Ctrl-C sets the yielded event (the agent is stopped); the second one raises."""
    cancel = threading.Event()

    def handler(signum, frame):
        print("\nCancelling... (Ctrl-C again to abort)")
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    original = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, original)


def cmd_step(args):
    config = load_config(args)
    with cancel_on_interrupt() as cancel, step_lock(config.state_dir):
        orchestrator = build_orchestrator(args, config, cancel)
        result = orchestrator.run_step(gate_response_from_args(args))
    print_result(result, args.json)
    return exit_code_for(result)


def cmd_loop(args):
    config = load_config(args)
    if args.one_shot:
        config.one_shot = True
    if args.max_iterations is not None:
        config.max_iterations = args.max_iterations
    with cancel_on_interrupt() as cancel, step_lock(config.state_dir):
        orchestrator = build_orchestrator(args, config, cancel)
        result = run_loop(orchestrator, config, gate_response_from_args(args))
    print_result(result, args.json)
    return exit_code_for(result)


def cmd_next(args):
    config = load_config(args)
    store = JsonStateStore(config.state_dir)
    items = store.list_items()
    state = store.get_run_state()

    if state.current_item:
        print(f"In progress: {state.current_item} ({state.status.value})")
    next_item = select_next(items, state.last_completed)
    print(f"Next: {next_item.id} {next_item.title}" if next_item else "Next: (none runnable)")

    candidates = scored_candidates(items, state.last_completed)
    if candidates:
        print(f"\n{'ITEM':<16} {'SCORE':>6}  PROX  TAGS  BLOCK  PRIO  SIMPLE")
        for s in candidates[:args.limit]:
            print(
                f"{s.item_id:<16} {s.score:>6.2f}  {s.proximity:>4.1f}  {s.tag_overlap:>4.2f}"
                f"  {s.blocker_value:>5}  {s.priority_score:>4.1f}  {s.inverse_complexity:>6.2f}"
            )
    return EXIT_OK


def cmd_layers(args):
    config = load_config(args)
    items = JsonStateStore(config.state_dir).list_items(args.version)
    depths = calculate_depths(items)

    for depth, layer in group_by_depth(items, depths).items():
        print(f"Layer {depth}:")
        for item in layer:
            mark = "x" if item.merged else ("-" if item.skipped else " ")
            print(f"  [{mark}] {item.id}  {item.title}")

    cycles = find_cycles(items)
    if cycles:
        print("\nWARNING: dependency cycles (depths are approximate):")
        for cycle in cycles:
            print(f"  {' -> '.join(cycle + cycle[:1])}")
    return EXIT_OK


def cmd_status(args):
    config = load_config(args)
    status = execution_status(JsonStateStore(config.state_dir))

    if args.json:
        status = dict(status, candidates=[s.__dict__ for s in status["candidates"]])
        print(json.dumps(status, indent=2))
        return EXIT_OK

    state = status["state"]
    progress = status["progress"]
    print(f"Status:   {state['status']}")
    print(f"Current:  {state['current_item'] or '-'}")
    if state["current_item"]:
        print(f"Branch:   {state['branch'] or '-'}")
        print(f"Attempts: {state['attempts']}")
        if state["review_url"]:
            print(f"Review:   {state['review_url']}")
    if state["last_error"]:
        print(f"Error:    {state['last_error']} (x{state['failure_count']})")
    print(f"Last:     {state['last_completed'] or '-'}")
    print(f"Progress: {progress['merged']}/{progress['total']} merged ({progress['percentage']}%), "
          f"{progress['skipped']} skipped")
    if status["next_item"]:
        print(f"Next:     {status['next_item']}")
    return EXIT_OK


def cmd_signal(args):
    config = load_config(args)
    store = JsonStateStore(config.state_dir)
    store.record_signal(args.item, SignalKind(args.kind), args.message)
    print(f"Recorded {args.kind} for {args.item}")
    return EXIT_OK


def cmd_reset(args):
    config = load_config(args)
    store = JsonStateStore(config.state_dir)
    with step_lock(config.state_dir):
        state = store.get_run_state()
        if state.current_item and not args.keep_checkpoints:
            store.clear_checkpoints(state.current_item)
        store.reset_run_state()
    print("Run state reset" + (f" ({state.current_item} released)" if state.current_item else ""))
    return EXIT_OK


def main():
    parser = argparse.ArgumentParser(prog='storyloop', description='Backlog execution orchestrator')
    parser.add_argument('--project-dir', '-C', default='.', help='Directory holding storyloop.env')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_gate_args(p):
        p.add_argument('--action', choices=['skip', 'submit', 'auto', 'clarify', 'merge', 'feedback'],
                       help='Answer to the pending gate')
        p.add_argument('--report', help='External dependencies report (with --action submit)')
        p.add_argument('--clarification', help='Clarification (with --action clarify)')
        p.add_argument('--feedback', help='Review feedback (with --action feedback)')
        p.add_argument('--json', action='store_true', help='Print the result as JSON')

    # storyloop step
    p_step = subparsers.add_parser('step', help='Run one step')
    add_gate_args(p_step)
    p_step.set_defaults(func=cmd_step)

    # storyloop loop
    p_loop = subparsers.add_parser('loop', help='Run steps until a gate, blocked or complete')
    add_gate_args(p_loop)
    p_loop.add_argument('--one-shot', action='store_true', help='Stop after the first merge')
    p_loop.add_argument('--max-iterations', type=int, help='Override MAX_ITERATIONS')
    p_loop.set_defaults(func=cmd_loop)

    # storyloop next
    p_next = subparsers.add_parser('next', help='Show the next item and candidate scores')
    p_next.add_argument('--limit', type=int, default=10, help='Candidates to show')
    p_next.set_defaults(func=cmd_next)

    # storyloop layers
    p_layers = subparsers.add_parser('layers', help='Show dependency layers')
    p_layers.add_argument('--version', help='Only items in this version')
    p_layers.set_defaults(func=cmd_layers)

    # storyloop status
    p_status = subparsers.add_parser('status', help='Show run state and progress')
    p_status.add_argument('--json', action='store_true')
    p_status.set_defaults(func=cmd_status)

    # storyloop signal
    p_signal = subparsers.add_parser('signal', help='Report an item outcome (used by the agent)')
    p_signal.add_argument('kind', choices=[k.value for k in SignalKind])
    p_signal.add_argument('item', help='Item ID')
    p_signal.add_argument('--message', '-m', help='Reason (for blocked)')
    p_signal.set_defaults(func=cmd_signal)

    # storyloop reset
    p_reset = subparsers.add_parser('reset', help='Release the current item and return to idle')
    p_reset.add_argument('--keep-checkpoints', action='store_true',
                         help=f"Keep the item's checkpoints ({', '.join(s.value for s in CheckpointStage)})")
    p_reset.set_defaults(func=cmd_reset)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except LockTimeout as e:
        print(f"ERROR: {e} (another step is running)")
        return EXIT_ERROR
    except (StoreError, ValidationError) as e:
        print(f"ERROR: {e}")
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
