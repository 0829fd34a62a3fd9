"""Command-line interface for DeployOps.

Usage:
    deployops autofix <issue_id> [--actor USER]
    deployops rollback <project_id> --pr N --sha SHA [--issue ISSUE_ID]
    deployops merge <issue_id> --yes [--method squash|merge|rebase]
    deployops issues <project_id> [--status STATUS]
    deployops runs [--kind autofix|rollback|preview] [--show RUN_ID]
    deployops serve
"""

import argparse
import asyncio
import getpass
import sys

from rich.console import Console
from rich.table import Table

from .credentials import resolve_credentials
from .services import Services, build_services

console = Console()

LEVEL_STYLES = {
    "info": "white",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="deployops",
        description="DeployOps - AI autofix and safe rollback orchestration",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # autofix command
    autofix_parser = subparsers.add_parser("autofix", help="Run the AI agent for an issue")
    autofix_parser.add_argument("issue_id", help="Issue ID")
    autofix_parser.add_argument(
        "--actor", default=getpass.getuser(),
        help="User recorded as the trigger and review assignee (default: current user)"
    )

    # rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Open a revert PR for a merged PR")
    rollback_parser.add_argument("project_id", help="Project ID")
    rollback_parser.add_argument("--pr", type=int, required=True, help="Number of the PR to revert")
    rollback_parser.add_argument("--sha", required=True, help="Merge commit SHA of the PR")
    rollback_parser.add_argument("--issue", help="Issue to reopen once the revert PR is open")
    rollback_parser.add_argument("--actor", default=getpass.getuser(), help="User recorded in the audit log")

    # merge command
    merge_parser = subparsers.add_parser("merge", help="Merge an issue's AI pull request")
    merge_parser.add_argument("issue_id", help="Issue ID")
    merge_parser.add_argument(
        "--method", "-m", choices=["squash", "merge", "rebase"], default="squash",
        help="Merge method (default: squash)"
    )
    merge_parser.add_argument("--comment", default="", help="Reviewer comment for the merge commit")
    merge_parser.add_argument("--yes", "-y", action="store_true", help="Confirm the merge")
    merge_parser.add_argument("--actor", default=getpass.getuser(), help="User recorded in the audit log")

    # issues command
    issues_parser = subparsers.add_parser("issues", help="List a project's issues")
    issues_parser.add_argument("project_id", help="Project ID")
    issues_parser.add_argument(
        "--status", "-s", choices=["open", "ai_running", "pr_created", "closed"],
        help="Only show issues in this state"
    )

    # runs command
    runs_parser = subparsers.add_parser("runs", help="List recent runs")
    runs_parser.add_argument("--kind", "-k", choices=["autofix", "rollback", "preview"], help="Filter by run kind")
    runs_parser.add_argument("--limit", "-n", type=int, default=20, help="Number of runs (default: 20)")
    runs_parser.add_argument("--show", metavar="RUN_ID", help="Print the log of one run")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--port", "-p", type=int, help="Port to listen on (default: API_PORT setting)")

    return parser


def print_record(record: dict) -> None:
    """Print one run log record."""
    if "status" in record:
        style = "bold green" if record["status"] == "SUCCESS" else "bold red"
        console.print(f"[{style}]{record['status']}[/{style}] {record['message']}")
        return
    style = LEVEL_STYLES.get(record.get("level"), "white")
    console.print(f"[{style}]{record['message']}[/{style}]", highlight=False)


def cmd_autofix(args, services: Services):
    """Handle autofix command."""
    console.print(f"\n[bold]AI fix for issue:[/bold] {args.issue_id}\n")
    result = asyncio.run(services.autofix.run(args.issue_id, actor=args.actor, on_log=print_record))

    if not result.success:
        sys.exit(1)
    console.print(f"\n[green]Pull request:[/green] {result.pr_url}")
    console.print(f"[dim]Run ID: {result.run_id}[/dim]")


def cmd_rollback(args, services: Services):
    """Handle rollback command."""
    project = services.store.get_project(args.project_id)
    if not project:
        console.print(f"[red]Project not found: {args.project_id}[/red]")
        sys.exit(1)

    credentials = resolve_credentials(project_token=project.github_token, settings=services.settings)
    console.print(f"\n[bold]Rolling back PR #{args.pr}[/bold] ({args.sha})\n")
    result = asyncio.run(
        services.rollback.run(
            repo_url=project.repo_url or f"{project.owner}/{project.repo}",
            commit_sha=args.sha,
            pr_number=args.pr,
            credentials=credentials,
            on_log=print_record,
        )
    )
    if not result.success:
        sys.exit(1)

    console.print(f"\n[green]Revert PR:[/green] {result.pr_url}")
    if args.issue:
        issue = services.issues.reopen_after_rollback(args.issue, args.actor, result.pr_url)
        console.print(f"[green]Issue {issue.id} reopened[/green]")


def cmd_merge(args, services: Services):
    """Handle merge command."""
    if not args.yes:
        console.print("[yellow]Merging requires --yes[/yellow]")
        sys.exit(1)

    issue = services.store.get_issue(args.issue_id)
    project = services.store.get_project(issue.project_id) if issue else None
    credentials = resolve_credentials(
        project_token=project.github_token if project else None,
        settings=services.settings,
    )
    result = asyncio.run(
        services.merge.merge(
            args.issue_id,
            actor=args.actor,
            credentials=credentials,
            method=args.method,
            comment=args.comment,
            confirm=True,
        )
    )
    if not result.success:
        console.print(f"[red]Error ({result.error_kind}): {result.error}[/red]")
        sys.exit(1)
    console.print(f"[green]Merged {result.pr_url}[/green] ({result.merged_sha})")


def cmd_issues(args, services: Services):
    """Handle issues command."""
    issues = services.store.list_issues(args.project_id, args.status)

    if not issues:
        console.print("[dim]No issues found[/dim]")
        return

    table = Table(title=f"Issues: {args.project_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("PR")

    for issue in issues:
        table.add_row(
            issue.id,
            issue.title[:50] + "..." if len(issue.title) > 50 else issue.title,
            issue.type,
            issue.status,
            issue.pr_url or "",
        )

    console.print(table)


def cmd_runs(args, services: Services):
    """Handle runs command."""
    if args.show:
        run = services.tracker.get_run(args.show)
        if not run:
            console.print(f"[red]Run not found: {args.show}[/red]")
            sys.exit(1)
        console.print(f"[bold]{run['kind']} {run['subject']}[/bold] [dim]{run['started_at']}[/dim]\n")
        for record in run["records"]:
            print_record(record)
        if run.get("result"):
            print_record(run["result"])
        return

    runs = services.tracker.list_runs(limit=args.limit, kind=args.kind)
    if not runs:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(title="Recent Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("Started")

    for run in runs:
        table.add_row(
            run["run_id"],
            run["kind"] or "",
            run["subject"] or "",
            run["status"] or "",
            (run["started_at"] or "")[:16],
        )

    console.print(table)


def cmd_serve(args, services: Services):
    """Handle serve command."""
    port = args.port or services.settings.api_port
    console.print(f"[bold]Starting API server on port {port}...[/bold]")

    import uvicorn
    from .api import app

    uvicorn.run(app, host=services.settings.api_host, port=port)


def main():
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "autofix": cmd_autofix,
        "rollback": cmd_rollback,
        "merge": cmd_merge,
        "issues": cmd_issues,
        "runs": cmd_runs,
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        cmd_func(args, build_services())
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
