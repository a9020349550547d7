# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

"""coreason-redact CLI entry point.

Provides the `coreason-redact` command over a JSON workspace file holding
rules, templates, documents and reports. Document content is read from and
redacted artifacts are written to an artifact directory (the workspace's
directory by default).

Subcommands:
  - enrich: Repair missing rule metadata for one template or all of a user's templates
  - scan: Show the matches a template produces on a text file
  - redact: Redact a workspace document and store its report
  - report: Print a document's redaction report
"""

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any, Dict, Iterator, Optional

import typer
from rich.console import Console

from coreason_redact import __version__
from coreason_redact.exceptions import IntegrityError, InvalidRequestError, NotFoundError, RedactError
from coreason_redact.main import RedactionService
from coreason_redact.store import FileArtifactStore, Stores, Workspace

app = typer.Typer(
    name="coreason-redact",
    help="Rule-based document redaction: enrich templates, scan, redact and review.",
    no_args_is_help=True,
)

_console = Console(stderr=True)

WorkspaceArg = Annotated[
    Path,
    typer.Argument(help="Path to the JSON workspace file.", exists=True, dir_okay=False),
]
ArtifactsOpt = Annotated[
    Optional[Path],
    typer.Option("--artifacts", "-a", help="Artifact directory. Defaults to the workspace's directory."),
]
UserOpt = Annotated[Optional[str], typer.Option("--user", "-u", help="Caller id; enforces ownership.")]


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"coreason-redact {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", help="Show version and exit.", callback=_version_callback, is_eager=True),
    ] = None,
) -> None:
    """coreason-redact: rule-based document redaction."""


class _Session:
    """A service bound to a loaded workspace. `save` writes the stores back."""

    def __init__(self, workspace: Path, artifacts: Optional[Path]) -> None:
        self.path = workspace
        self.stores: Stores = Workspace.load(workspace).to_stores()
        self.service = RedactionService(
            rules=self.stores.rules,
            templates=self.stores.templates,
            documents=self.stores.documents,
            reports=self.stores.reports,
            artifacts=FileArtifactStore(artifacts or workspace.parent),
        )

    def save(self) -> None:
        Workspace.from_stores(self.stores).dump(self.path)


def _print_json(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _fail(error: RedactError) -> typer.Exit:
    _console.print(f"[bold red]Error ({error.code}):[/bold red] {error.message}", highlight=False)
    if isinstance(error, IntegrityError):
        _console.print("Run `coreason-redact enrich` on the template, then retry.", highlight=False)
    return typer.Exit(code=1)


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Turns engine errors into a console message and exit code 1."""
    try:
        yield
    except RedactError as e:
        raise _fail(e) from e


@app.command()
def enrich(
    workspace: WorkspaceArg,
    template: Annotated[Optional[str], typer.Option("--template", "-t", help="Template id to enrich.")] = None,
    user: UserOpt = None,
) -> None:
    """Repair missing version/checksum metadata.

    With --template, enriches that template. With only --user, enriches every
    template the user owns. Exits 1 when any rule could not be repaired.
    """
    with _handle_errors():
        if not template and not user:
            raise InvalidRequestError("Specify --template or --user")
        session = _Session(workspace, None)
        if template:
            result = session.service.enrich_template(template, user)
            ok = result.success
            payload = result.model_dump(mode="json", by_alias=True)
        else:
            result_all = session.service.enrich_all_templates(user or "")
            ok = not result_all.errors
            payload = result_all.model_dump(mode="json", by_alias=True)
        session.save()
    _print_json(payload)
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def scan(
    workspace: WorkspaceArg,
    template: Annotated[str, typer.Option("--template", "-t", help="Template whose rules are applied.")],
    file: Annotated[Path, typer.Option("--file", "-f", help="UTF-8 text file to scan.", exists=True, dir_okay=False)],
    user: UserOpt = None,
) -> None:
    """Print the matches a template produces on a file, without redacting it."""
    with _handle_errors():
        session = _Session(workspace, None)
        rules = session.service.resolve_template(template, user)
        session.service.validate_rule_set(rules, template)
        try:
            text = file.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise InvalidRequestError(f"{file} is not readable UTF-8 text") from e
        matches = session.service.match_engine.scan(text, rules)
    _print_json(
        {
            "templateId": template,
            "ruleCount": len(rules),
            "matches": [m.model_dump(mode="json", by_alias=True) for m in matches],
        }
    )


@app.command()
def redact(
    workspace: WorkspaceArg,
    document: Annotated[str, typer.Argument(help="Document id.")],
    template: Annotated[str, typer.Option("--template", "-t", help="Template whose rules are applied.")],
    artifacts: ArtifactsOpt = None,
    user: UserOpt = None,
) -> None:
    """Redact a document and store its report in the workspace.

    Exits 1 on failure, and 2 when the template produced no matches and the
    document needs manual review.
    """
    with _handle_errors():
        session = _Session(workspace, artifacts)
        try:
            outcome = session.service.redact_document(document, template, user)
        finally:
            session.save()
    payload = outcome.model_dump(mode="json", by_alias=True, exclude={"report"})
    if outcome.report is not None:
        payload["entityCount"] = len(outcome.report.redacted_entities)
        payload["countsByCategory"] = outcome.report.counts_by_category()
    _print_json(payload)
    if outcome.requires_manual_review:
        raise typer.Exit(code=2)


@app.command()
def report(
    workspace: WorkspaceArg,
    document: Annotated[str, typer.Argument(help="Document id.")],
    user: UserOpt = None,
) -> None:
    """Print a document's redaction report."""
    with _handle_errors():
        session = _Session(workspace, None)
        result = session.service.get_redaction_report(document, user)
        if result is None:
            raise NotFoundError("report", document)
    _print_json(
        {
            **result.model_dump(mode="json", by_alias=True),
            "countsByCategory": result.counts_by_category(),
            "countsByRule": result.counts_by_rule(),
            "countsByLocation": result.counts_by_location(),
        }
    )
