#!/usr/bin/env python3

import argparse
import json
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

import yaml

from build_orchestrator import BuildOrchestrator
from build_tracker import BuildTracker
from config import BuildConfig, BuildReport, ResolutionResult, StageStatus, Verdict
from container_runtime import DockerRuntime
from errors import BuildCancelled, ExecutionError, StageCacheError
from fingerprint import short
from image_sources import DockerImageSource, LocalImageStore
from parser import DeclarationParser
from stage_graph import StageGraphBuilder
from utils import docker_available

# Default to plain ASCII to avoid terminal width issues; set 0 to enable emojis
PLAIN_LOG = os.getenv('STAGECACHE_LOG_PLAIN', '1').lower() in ('1', 'true', 'yes')
ICON_CACHED = '♻️ ' if not PLAIN_LOG else '[CACHED]'
ICON_BUILT = '🔨' if not PLAIN_LOG else '[BUILT] '
ICON_STAGE = '📦' if not PLAIN_LOG else '[STAGE]'
ICON_FAIL = '❌' if not PLAIN_LOG else '[FAILED]'
ICON_SKIP = '⏭️ ' if not PLAIN_LOG else '[SKIPPED]'
ICON_OK = '✅' if not PLAIN_LOG else '[OK]'

ENV_MAPPING = {
    'STAGECACHE_WORKERS': ('workers', int),
    'STAGECACHE_BACKEND': ('backend', str),
    'STAGECACHE_STORE': ('store_path', str),
    'STAGECACHE_HISTORY': ('history_file', str),
    'STAGECACHE_INSPECT_WORKERS': ('inspect_workers', int),
    'STAGECACHE_CONTEXT': ('context_dir', str),
}


def load_build_config(config_path: Optional[str] = None) -> BuildConfig:
    """Load build configuration from file, then environment"""
    config = BuildConfig()

    if config_path:
        with open(config_path, 'r', encoding='utf-8') as f:
            if config_path.lower().endswith(('.yml', '.yaml')):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        for key, value in data.items():
            if hasattr(config, key):
                setattr(config, key, value)
            else:
                logging.warning("Ignoring unknown config key '%s'", key)

    for env_var, (attr, cast) in ENV_MAPPING.items():
        if env_var in os.environ:
            try:
                setattr(config, attr, cast(os.environ[env_var]))
            except ValueError:
                raise ValueError(f"{env_var} must be {cast.__name__}, got {os.environ[env_var]!r}") from None

    if config.backend not in ('local', 'docker'):
        raise ValueError(f"Unknown backend '{config.backend}' (expected local or docker)")
    return config


def make_image_source(config: BuildConfig):
    if config.backend == 'docker':
        return DockerImageSource()
    return LocalImageStore(config.store_path)


def publish_map(order: List[str], target: str, tag: Optional[str], stage_template: Optional[str]) -> Dict[str, str]:
    """Stage name -> image reference to publish it as"""
    refs: Dict[str, str] = {}
    if stage_template:
        for name in order:
            refs[name] = stage_template.format(stage=name)
    if tag:
        refs[target] = tag
    return refs


def print_result(result: ResolutionResult):
    status = '' if result.status == StageStatus.COMPLETE else f" ({result.status.value})"
    print(f"{ICON_STAGE} {result.stage}{status}: {result.cached_count} cached, "
          f"{result.built_count} built -> {short(result.final_fingerprint)}")
    for item in result.instructions:
        icon = ICON_CACHED if item.verdict == Verdict.CACHED else ICON_BUILT
        print(f"   {icon} #{item.index} {short(item.fingerprint)} {item.text}")


def print_report(report: BuildReport):
    for name in report.order:
        if name in report.results:
            print_result(report.results[name])
        if name in report.failed:
            print(f"   {ICON_FAIL} {report.failed[name]}")
        if name in report.skipped:
            print(f"{ICON_SKIP} {name}: not built")
    for name, ref in report.published.items():
        print(f"{ICON_OK} Published {name} as {ref}")


def cmd_build(args):
    """Build command handler"""
    config = load_build_config(args.config)
    if args.workers:
        config.workers = args.workers
    source = make_image_source(config)

    stages = DeclarationParser().parse_file(args.file)
    graph = StageGraphBuilder(base_identity=source.identity).build(stages)
    target = args.target or graph.target()
    graph.stage(target)

    tracker = BuildTracker(config.history_file)
    context_dir = args.context or config.context_dir
    runtime = None if args.dry_run else DockerRuntime(context_dir=context_dir)
    orchestrator = BuildOrchestrator(runtime, image_source=source, workers=config.workers,
                                     tracker=tracker, inspect_workers=config.inspect_workers)

    print(f"Building target '{target}' from {args.file}")
    print(f"   Cache sources: {', '.join(args.cache_from) if args.cache_from else '(none)'}")

    if args.dry_run:
        for result in orchestrator.plan(graph, target, args.cache_from).values():
            print_result(result)
        return 0

    if not docker_available():
        print(f"{ICON_FAIL} Docker daemon is not accessible.")
        print("   - Hints: add your user to the 'docker' group, or set STAGECACHE_NO_SUDO=1 to skip sudo attempts.")
        return 1

    previous = signal.signal(signal.SIGINT, lambda *_: orchestrator.cancel())
    try:
        publish = publish_map(graph.subgraph_order(target), target, args.tag, args.publish_stages)
        report = orchestrator.build(graph, target, args.cache_from, publish=publish)
    except (ExecutionError, BuildCancelled) as e:
        if e.report is not None:
            print_report(e.report)
        print(f"\n{ICON_FAIL} {e}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    print_report(report)
    print(f"\n{ICON_OK} Build completed")
    return 0


def cmd_status(args):
    """Status command handler"""
    config = load_build_config(args.config)
    tracker = BuildTracker(config.history_file)
    last = tracker.last_build()
    if last is None:
        print("No builds recorded")
        return 0

    print("=== Build Status ===")
    print(f"Builds recorded: {len(tracker.builds())}")
    print(f"Last build: {last['target']} at {last['timestamp']} "
          f"({'succeeded' if last.get('succeeded') else 'failed'})")
    for name in last.get('order', []):
        stage = last['stages'].get(name)
        if stage is None:
            print(f"  {ICON_SKIP} {name}: not built")
            continue
        verdicts = [item['verdict'] for item in stage['instructions']]
        print(f"  {ICON_STAGE} {name}: {verdicts.count('cached')} cached, {verdicts.count('built')} built")

    print("\nCache efficiency (last 10 builds):")
    for name, entry in sorted(tracker.get_stage_stats().items()):
        print(f"  {name}: {entry['efficiency']:.1%} over {entry['builds']} builds")
    return 0


def cmd_clean(args):
    """Clean command handler"""
    config = load_build_config(args.config)
    tracker = BuildTracker(config.history_file)
    removed = tracker.cleanup_old_builds(keep_last=args.keep)
    print(f"Removed {removed} build records")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='stagecache',
        description="Multi-stage container builds with content-addressed layer caching",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s build -f Dockerfile --target stage2 --cache-from repo:stage_stage1
  %(prog)s build -f Dockerfile --publish-stages 'tmp/multistage:stage_{stage}' --dry-run
  %(prog)s status
  %(prog)s clean --keep 5
        """
    )
    parser.add_argument('--config', help='Path to build configuration file (JSON/YAML)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    build_cmd = subparsers.add_parser('build', help='Build a target stage')
    build_cmd.add_argument('-f', '--file', default='Dockerfile',
                           help='Dockerfile or YAML/JSON stage declaration (default: Dockerfile)')
    build_cmd.add_argument('--target', help='Stage to build (default: last stage)')
    build_cmd.add_argument('--cache-from', action='append', default=[], metavar='IMAGE',
                           help='Image whose layer history may be reused (repeatable)')
    build_cmd.add_argument('--tag', help='Publish the target stage as this image reference')
    build_cmd.add_argument('--publish-stages', metavar='TEMPLATE',
                           help="Publish every built stage, e.g. 'repo:stage_{stage}'")
    build_cmd.add_argument('--context', help='Build context directory for COPY/ADD')
    build_cmd.add_argument('--workers', type=int, help='Stages built concurrently')
    build_cmd.add_argument('--dry-run', action='store_true', help='Only report cache verdicts')
    build_cmd.set_defaults(func=cmd_build)

    status_cmd = subparsers.add_parser('status', help='Show recorded build history')
    status_cmd.set_defaults(func=cmd_status)

    clean_cmd = subparsers.add_parser('clean', help='Drop old build records')
    clean_cmd.add_argument('--keep', type=int, default=10, help='Build records to keep (default: 10)')
    clean_cmd.set_defaults(func=cmd_clean)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s %(name)s: %(message)s')

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1
    except (StageCacheError, ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
