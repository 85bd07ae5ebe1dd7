"""Split Balancer command line.

This script defines the project ROOT directory (the directory containing
run.py) before the settings are loaded, so config/system_config.json and
config/config.json are always read from next to this file.

Commands:
  analyze      per-split category counts, balance score and recommendations
  plan         preview a single-split plan
  global-plan  preview a multi-split plan (category or split-size mode)
  rebalance    execute a plan (requires --yes)
  integrity    list orphaned images/labels and resolution mismatches
  serve        start the HTTP API
"""


from __future__ import annotations
import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

# Define project root as the directory containing this script
ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
	sys.path.insert(0, str(ROOT))

from balancer.balance_analyzer import (
	analyze_integrity,
	calculate_balance_score,
	classify_balance_status,
	get_recommendations,
)
from balancer.balance_settings import (
	default_global_config,
	default_rebalance_config,
	effective_target_ratios,
	get_balance_settings,
)
from balancer.balance_types import DatasetSplit, ImageCategory, SplitRatios, TargetRatios
from balancer.log import error, info, progress_context, success, warning
from balancer.progress import AnalysisProgress, RebalanceProgress, is_terminal
from balancer.rebalance_planner import plan_global_rebalance, plan_split_rebalance, plan_split_sizes
from balancer.rebalance_types import GlobalRebalancePlan, RebalancePlan, SelectionStrategy
from balancer.tasks import BackgroundTask, TaskManager


def _target_ratios(args: argparse.Namespace) -> Optional[TargetRatios]:
	if args.ratios is None:
		return None
	player, background, hard_case = args.ratios
	return TargetRatios(player_ratio=player, background_ratio=background, hardcase_ratio=hard_case)


def _split_ratios(args: argparse.Namespace) -> Optional[SplitRatios]:
	if getattr(args, "split_ratios", None) is None:
		return None
	train, val, test = args.split_ratios
	return SplitRatios(train=train, val=val, test=test)


def _strategy(args: argparse.Namespace) -> Optional[SelectionStrategy]:
	if args.strategy is None:
		return None
	return SelectionStrategy.parse(args.strategy, get_balance_settings().selection_strategy)


def _follow(task: BackgroundTask, desc: str, unit: str) -> List[object]:
	"""Poll a task until its terminal message, drawing a progress bar."""
	messages: List[object] = []
	with progress_context(desc=desc, unit=unit) as pbar:
		try:
			while True:
				message = task.poll()
				if message is None:
					if not task.is_running() and task.join(0):
						break
					time.sleep(0.05)
					continue
				messages.append(message)
				if isinstance(message, (AnalysisProgress, RebalanceProgress)):
					pbar.total = message.total
					pbar.update(message.current - pbar.n)
				if is_terminal(message):
					break
		except KeyboardInterrupt:
			warning("Interrupted, cancelling after the current file...")
			task.cancel()
			task.join()
			messages.extend(task.drain())
	return messages


def cmd_analyze(args: argparse.Namespace) -> int:
	root = Path(args.dataset_root)
	settings = get_balance_settings()
	target = effective_target_ratios(_target_ratios(args))
	target.validate()
	manager = TaskManager()
	splits = [DatasetSplit(args.split)] if args.split else list(DatasetSplit.ordered())

	for split in splits:
		task = manager.start_analysis(root, split)
		_follow(task, desc=f"Analyzing {split.value}", unit="img")
		task.join()
		stats = task.result
		if stats is None:
			error(f"Analysis of {split.value} failed: {task.last_error}")
			return 1

		score = calculate_balance_score(stats, target)
		info(
			f"[{split.value}] {stats.total_images} images: "
			+ ", ".join(f"{category.label} {stats.get_count(category)} ({stats.get_percentage(category):.1f}%)"
				for category in ImageCategory.ordered())
		)
		info(f"[{split.value}] balance score {score:.3f} ({classify_balance_status(score, settings.balance_score_thresholds)})")
		for line in get_recommendations(stats, target):
			info(f"[{split.value}] {line}")
		if task.status == "cancelled":
			warning("Analysis cancelled; counts above are partial.")
			return 1
	return 0


def _print_plan(plan: RebalancePlan) -> None:
	if plan.is_empty():
		success("Nothing to move: the split is already at target.")
		return
	info(f"{plan.count_to_move} images {plan.from_split.value} -> {plan.to_split.value}")
	for action in plan.actions[:20]:
		info(f"  {action.image_path.name} ({action.category.label})")
	if len(plan.actions) > 20:
		info(f"  ... and {len(plan.actions) - 20} more")


def _print_global_plan(plan: GlobalRebalancePlan) -> None:
	if plan.is_empty():
		success("Nothing to move: all splits are within tolerance.")
		return
	info(f"{plan.total_moves} images in {len(plan.moves)} groups ({plan.iterations_used} iterations)")
	for group in plan.moves:
		info(f"  {group.count:>6} {group.category.label:<16} {group.from_split.value} -> {group.to_split.value}")


def _single_plan(args: argparse.Namespace) -> RebalancePlan:
	config = default_rebalance_config(
		target_ratios=_target_ratios(args),
		selection_strategy=_strategy(args),
		preserve_ct_t_balance=False if args.no_preserve else None,
		source_split=DatasetSplit(args.source),
		destination_split=DatasetSplit(args.destination),
		category=ImageCategory(args.category),
		random_seed=args.seed,
	)
	return plan_split_rebalance(Path(args.dataset_root), config)


def _global_plan(args: argparse.Namespace) -> GlobalRebalancePlan:
	config = default_global_config(
		target_ratios=_target_ratios(args),
		split_ratios=_split_ratios(args),
		tolerance=args.tolerance,
		max_iterations=args.max_iterations,
		selection_strategy=_strategy(args),
		preserve_ct_t_balance=False if args.no_preserve else None,
		random_seed=args.seed,
	)
	if args.mode == "split_size":
		return plan_split_sizes(Path(args.dataset_root), config)
	return plan_global_rebalance(Path(args.dataset_root), config)


def cmd_plan(args: argparse.Namespace) -> int:
	_print_plan(_single_plan(args))
	return 0


def cmd_global_plan(args: argparse.Namespace) -> int:
	_print_global_plan(_global_plan(args))
	return 0


def cmd_rebalance(args: argparse.Namespace) -> int:
	root = Path(args.dataset_root)
	manager = TaskManager()
	if args.use_global:
		plan = _global_plan(args)
		_print_global_plan(plan)
		if plan.is_empty():
			return 0
		if not args.yes:
			warning("Dry run only; pass --yes to move files.")
			return 0
		task = manager.start_global_rebalance(
			root,
			plan,
			selection_strategy=_strategy(args),
			preserve_ct_t_balance=False if args.no_preserve else None,
			random_seed=args.seed,
		)
	else:
		plan = _single_plan(args)
		_print_plan(plan)
		if plan.is_empty():
			return 0
		if not args.yes:
			warning("Dry run only; pass --yes to move files.")
			return 0
		task = manager.start_rebalance(root, plan)

	_follow(task, desc="Moving", unit="file")
	task.join()
	results = task.result or []
	failed = [result for result in results if not result.success]
	mismatched = [result for result in results if result.label_mismatch]
	for result in failed:
		error(f"{result.action.image_path.name}: {result.error}")
	for result in mismatched:
		warning(f"{result.action.image_path.name}: label left behind ({result.label_error})")
	if task.status == "error":
		error(task.last_error or "Rebalance failed")
		return 1
	success(f"{len(results) - len(failed)} moved, {len(failed)} failed")
	return 1 if failed else 0


def cmd_integrity(args: argparse.Namespace) -> int:
	root = Path(args.dataset_root)
	splits = [DatasetSplit(args.split)] if args.split else list(DatasetSplit.ordered())
	found = 0
	for split in splits:
		stats = analyze_integrity(root, split, check_resolution=True if args.check_resolution else None)
		found += stats.total_issues
		for issue in stats.all_issues():
			detail = f" ({issue.detail})" if issue.detail else ""
			warning(f"[{split.value}] {issue.issue_type.value}: {issue.path.name}{detail}")
	if found:
		warning(f"{found} integrity issues found")
		return 1
	success("No integrity issues found")
	return 0


def cmd_serve(args: argparse.Namespace) -> int:
	from balancer.entry import start_api_server
	start_api_server(host=args.host, port=args.port)
	return 0


def _add_plan_options(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--ratios", nargs=3, type=float, metavar=("PLAYER", "BACKGROUND", "HARD_CASE"))
	parser.add_argument("--strategy", choices=[strategy.value for strategy in SelectionStrategy])
	parser.add_argument("--no-preserve", action="store_true", help="do not keep the CT/T proportions")
	parser.add_argument("--seed", type=int)


def _add_single_options(parser: argparse.ArgumentParser) -> None:
	splits = [split.value for split in DatasetSplit.ordered()]
	parser.add_argument("--source", choices=splits, default=DatasetSplit.TRAIN.value)
	parser.add_argument("--destination", choices=splits, default=DatasetSplit.VAL.value)
	parser.add_argument("--category", choices=[category.value for category in ImageCategory.ordered()],
		default=ImageCategory.BACKGROUND.value)


def _add_global_options(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--mode", choices=["category", "split_size"], default="category")
	parser.add_argument("--split-ratios", nargs=3, type=float, metavar=("TRAIN", "VAL", "TEST"))
	parser.add_argument("--tolerance", type=float)
	parser.add_argument("--max-iterations", type=int)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(prog="run.py", description="Balance YOLO dataset splits.")
	commands = parser.add_subparsers(dest="command", required=True)
	splits = [split.value for split in DatasetSplit.ordered()]

	analyze = commands.add_parser("analyze", help="show per-split balance")
	analyze.add_argument("dataset_root")
	analyze.add_argument("--split", choices=splits)
	analyze.add_argument("--ratios", nargs=3, type=float, metavar=("PLAYER", "BACKGROUND", "HARD_CASE"))
	analyze.set_defaults(func=cmd_analyze)

	plan = commands.add_parser("plan", help="preview a single-split plan")
	plan.add_argument("dataset_root")
	_add_single_options(plan)
	_add_plan_options(plan)
	plan.set_defaults(func=cmd_plan)

	global_plan = commands.add_parser("global-plan", help="preview a multi-split plan")
	global_plan.add_argument("dataset_root")
	_add_global_options(global_plan)
	_add_plan_options(global_plan)
	global_plan.set_defaults(func=cmd_global_plan)

	rebalance = commands.add_parser("rebalance", help="execute a plan")
	rebalance.add_argument("dataset_root")
	rebalance.add_argument("--global", dest="use_global", action="store_true")
	rebalance.add_argument("--yes", action="store_true", help="actually move files")
	_add_single_options(rebalance)
	_add_global_options(rebalance)
	_add_plan_options(rebalance)
	rebalance.set_defaults(func=cmd_rebalance)

	integrity = commands.add_parser("integrity", help="find orphaned files")
	integrity.add_argument("dataset_root")
	integrity.add_argument("--split", choices=splits)
	integrity.add_argument("--check-resolution", action="store_true")
	integrity.set_defaults(func=cmd_integrity)

	serve = commands.add_parser("serve", help="start the HTTP API")
	serve.add_argument("--host")
	serve.add_argument("--port", type=int)
	serve.set_defaults(func=cmd_serve)
	return parser


def main(argv: Optional[List[str]] = None) -> int:
	args = build_parser().parse_args(argv)
	try:
		return args.func(args)
	except ValueError as exc:
		error(str(exc))
		return 2


if __name__ == "__main__":
	sys.exit(main())
