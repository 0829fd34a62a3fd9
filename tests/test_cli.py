"""Tests for the command-line interface."""

import pytest

from conftest import FakeInvoker
from deployops.cli import cmd_autofix, cmd_issues, cmd_merge, cmd_rollback, cmd_runs, create_parser
from deployops.services import build_services


@pytest.fixture
def services(settings, github, project):
    services = build_services(settings, invoker=FakeInvoker())
    services.autofix.github_factory = github.factory
    services.merge.github_factory = github.factory
    return services


class TestParser:
    def test_rollback_arguments(self):
        args = create_parser().parse_args(["rollback", "proj-1", "--pr", "42", "--sha", "abc123"])
        assert args.command == "rollback"
        assert args.pr == 42
        assert args.sha == "abc123"
        assert args.issue is None

    def test_merge_defaults_to_squash(self):
        args = create_parser().parse_args(["merge", "i1"])
        assert args.method == "squash"
        assert args.yes is False

    def test_rejects_unknown_status(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["issues", "proj-1", "--status", "done"])


class TestCommands:
    def test_autofix_prints_pull_request(self, services, make_issue, capsys):
        issue = make_issue()
        args = create_parser().parse_args(["autofix", issue.id, "--actor", "alice"])

        cmd_autofix(args, services)

        assert "https://github.com/acme/shop/pull/42" in capsys.readouterr().out
        assert services.store.get_issue(issue.id).status == "pr_created"

    def test_autofix_failure_exits(self, services, make_issue):
        issue = make_issue(status="closed")
        args = create_parser().parse_args(["autofix", issue.id])

        with pytest.raises(SystemExit) as exc:
            cmd_autofix(args, services)
        assert exc.value.code == 1

    def test_merge_requires_confirmation(self, services, make_issue):
        issue = make_issue(status="pr_created", pr_url="https://github.com/acme/shop/pull/42")
        args = create_parser().parse_args(["merge", issue.id])

        with pytest.raises(SystemExit):
            cmd_merge(args, services)
        assert services.store.get_issue(issue.id).status == "pr_created"

    def test_rollback_unknown_project(self, services):
        args = create_parser().parse_args(["rollback", "missing", "--pr", "1", "--sha", "abc"])
        with pytest.raises(SystemExit):
            cmd_rollback(args, services)

    def test_issues_table(self, services, make_issue, capsys):
        make_issue(title="Checkout total")
        cmd_issues(create_parser().parse_args(["issues", "proj-1"]), services)
        assert "Checkout total" in capsys.readouterr().out

    def test_runs_empty(self, services, capsys):
        cmd_runs(create_parser().parse_args(["runs"]), services)
        assert "No runs found" in capsys.readouterr().out
