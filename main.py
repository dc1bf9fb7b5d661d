# crash-triage/main.py
import argparse
import json
import logging
import sys

from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from config import TriageConfig, TriageConfigError
from crash_analysis import (
    Blamer,
    GitRepository,
    ProjectLayout,
    TriageError,
    UnresolvableRevision,
    mark_fixed,
    mark_fixes_deployed,
)
from crash_analysis.schema import OccurrencePayload
from db.db import TriageDB
from logger import setup_triage_logger

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="crash-triage: deduplicate crash occurrences into bugs"
    )
    parser.add_argument("--config", default=None,
                        help="Path to a config file (default: ~/.crashtriage/config.json).")
    parser.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Override the configured logging level.")
    parser.add_argument("--quiet", action="store_true",
                        help="Minimize console output (overrides log-level to WARNING).")
    parser.add_argument("--db-path", default=None, help="Override the configured database path.")
    parser.add_argument("--repo-path", default=None, help="Override the configured git repository path.")

    sub = parser.add_subparsers(dest="command", required=True)

    triage = sub.add_parser("triage", help="Triage occurrences from a JSON file (object or list)")
    triage.add_argument("occurrence_file", help="JSON file holding one occurrence or a list of them")
    triage.add_argument("--environment", default=None,
                        help="Environment name, overriding the one in the payload")

    deploy = sub.add_parser("deploy", help="Record a deploy and flag shipped fixes")
    deploy.add_argument("--environment", required=True, help="Environment name")
    deploy.add_argument("--revision", required=True, help="Deployed revision")
    deploy.add_argument("--build", default=None, help="Build identifier")

    fix = sub.add_parser("fix", help="Mark a bug fixed")
    fix.add_argument("bug_id", type=int)
    fix.add_argument("--revision", default=None, help="Commit that fixes the bug")

    show = sub.add_parser("show", help="Show a bug and its occurrences")
    show.add_argument("bug_id", type=int)

    bugs = sub.add_parser("bugs", help="List bugs of an environment")
    bugs.add_argument("--environment", required=True, help="Environment name")
    bugs.add_argument("--open", action="store_true", help="Only list open bugs")

    return parser


def bug_table(bugs, title="BUGS") -> Table:
    table = Table(title=f"[bold bright_cyan]{title}", border_style="bright_blue", expand=True)
    table.add_column("ID", justify="right", style="bright_white")
    table.add_column("Class", style="red")
    table.add_column("Location", style="bright_cyan")
    table.add_column("Template", style="magenta")
    table.add_column("Blamed", style="cyan")
    table.add_column("Deploy", justify="right", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Count", justify="right")
    for bug in bugs:
        if bug.fixed:
            status = "fixed (deployed)" if bug.fix_deployed else "fixed"
        else:
            status = "open"
        if bug.duplicate_of is not None:
            status += f", dup of {bug.duplicate_of}"
        table.add_row(
            str(bug.bug_id),
            bug.class_name,
            f"{bug.file}:{bug.line}" + (" *" if bug.special_file else ""),
            bug.message_template or "",
            (bug.blamed_revision or "")[:10],
            str(bug.deploy_id) if bug.deploy_id is not None else "",
            status,
            str(bug.occurrences_count),
        )
    return table


def load_payloads(path: str):
    with open(path, "r") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = [data]
    return [OccurrencePayload.model_validate(item) for item in data]


def run(args, cfg: TriageConfig, db: TriageDB, logger: logging.Logger) -> int:
    project = db.get_or_create_project(cfg.project_name, cfg.repo_path, cfg.filter_paths)
    repository = GitRepository(project.repo_path or cfg.repo_path,
                               git_binary=cfg.git_binary, timeout=cfg.git_timeout)

    if args.command == "triage":
        blamer = Blamer(
            db,
            repository,
            layout=ProjectLayout(cfg.source_roots, project.filter_paths or cfg.filter_paths),
            stale_fix_after=cfg.stale_fix_after,
        )
        results = []
        for payload in load_payloads(args.occurrence_file):
            environment = db.get_or_create_environment(project.project_id,
                                                       args.environment or payload.environment)
            results.append(blamer.triage(payload.to_occurrence(environment.environment_id)))
        console.print(bug_table(results, title="TRIAGED"))
        stats = blamer.get_statistics()
        logger.info(f"Triaged {stats['total_occurrences']} occurrence(s): "
                    f"{stats['new_bugs']} new bug(s), {stats['reopened_bugs']} reopened")
        return 0

    if args.command == "deploy":
        revision = repository.resolve_revision(args.revision)
        if revision is None:
            raise UnresolvableRevision(args.revision)
        environment = db.get_or_create_environment(project.project_id, args.environment)
        deploy = db.add_deploy(environment.environment_id, revision, build=args.build)
        flagged = mark_fixes_deployed(db, repository, deploy)
        console.print(f"Deploy [bold]{deploy.deploy_id}[/bold] of {revision[:10]} "
                      f"recorded for [bright_cyan]{environment.name}[/bright_cyan]")
        if flagged:
            console.print(bug_table(flagged, title="FIXES DEPLOYED"))
        return 0

    if args.command in ("fix", "show"):
        bug = db.get_bug(args.bug_id)
        if bug is None:
            logger.error(f"No bug with id {args.bug_id}")
            return 1
        if args.command == "fix":
            resolution = None
            if args.revision:
                resolution = repository.resolve_revision(args.revision)
                if resolution is None:
                    raise UnresolvableRevision(args.revision)
            bug = mark_fixed(db, bug, resolution)
        console.print(bug_table([bug], title=f"BUG {bug.bug_id}"))
        if args.command == "show":
            occurrences = Table(title="[bold bright_cyan]OCCURRENCES", border_style="bright_blue", expand=True)
            occurrences.add_column("ID", justify="right", style="bright_white")
            occurrences.add_column("When", style="green")
            occurrences.add_column("Revision", style="cyan")
            occurrences.add_column("Message", style="bright_black")
            for occ in db.get_occurrences(bug.bug_id):
                occurrences.add_row(str(occ["occurrence_id"]), occ["occurred_at"].isoformat(),
                                    (occ["revision"] or "")[:10], occ["message"] or "")
            console.print(occurrences)
        return 0

    if args.command == "bugs":
        environment = db.get_or_create_environment(project.project_id, args.environment)
        bugs = db.get_bugs(environment.environment_id, fixed=False if args.open else None)
        console.print(bug_table(bugs, title=f"BUGS ({environment.name})"))
        return 0

    return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = TriageConfig.load(args.config)
    except TriageConfigError as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    if args.db_path:
        cfg.db_path = args.db_path
    if args.repo_path:
        cfg.repo_path = args.repo_path

    log_level = logging.getLevelName((args.log_level or cfg.log_level).upper())
    if args.quiet or not isinstance(log_level, int):
        log_level = logging.WARNING
    logger = setup_triage_logger(log_level, log_to_file=cfg.log_to_file)

    db = TriageDB(cfg.db_path)
    try:
        return run(args, cfg, db, logger)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Triage failed: {e}")
        return 1
    except TriageError as e:
        logger.error(str(e))
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
