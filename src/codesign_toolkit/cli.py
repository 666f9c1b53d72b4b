"""CLI entry point for codesign-toolkit."""

from __future__ import annotations

import sys

import click

from codesign_toolkit import __version__
from codesign_toolkit.audit import JiraClient
from codesign_toolkit.backends import BackendRunner, probe_tools
from codesign_toolkit.config import Settings, load_settings
from codesign_toolkit.dispatcher import SigningDispatcher
from codesign_toolkit.errors import SignatureInvalid, SigningError
from codesign_toolkit.logging_utils import configure_logging
from codesign_toolkit.models import (
    ArtifactType,
    CredentialBundle,
    JavaCredentials,
    Operation,
    Pkcs12Credentials,
    WindowsCredentials,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TYPE_CHOICE = click.Choice([t.value for t in ArtifactType], case_sensitive=False)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _dispatcher(ctx: click.Context) -> SigningDispatcher:
    dispatcher = ctx.obj.get("dispatcher")
    if dispatcher is None:
        dispatcher = SigningDispatcher.from_settings(
            _settings(ctx), runner=ctx.obj.get("runner")
        )
        ctx.obj["dispatcher"] = dispatcher
    return dispatcher


def _fail(exc: Exception, exit_code: int = 1) -> None:
    kind = exc.kind if isinstance(exc, SigningError) else type(exc).__name__
    click.echo(f"FAILED [{kind}]: {exc}", err=True)
    sys.exit(exit_code)


def _credentials(
    kind: ArtifactType,
    cert: str | None,
    key: str | None,
    keystore: str | None,
    alias: str | None,
    storepass: str | None,
    keypass: str | None,
    name: str | None,
    url: str | None,
    identity: str | None,
) -> CredentialBundle:
    if kind is ArtifactType.windows:
        return WindowsCredentials(
            certificate=cert, private_key=key, password=keypass, app_name=name, app_url=url
        )
    if kind is ArtifactType.java:
        return JavaCredentials(
            keystore=keystore, alias=alias, store_password=storepass, key_password=keypass
        )
    return Pkcs12Credentials(
        path=cert, passphrase=keypass, **({"identity": identity} if identity else {})
    )


def _run(
    ctx: click.Context,
    operation: Operation,
    artifact_type: str | None,
    credentials: CredentialBundle | None,
    input_path: str,
    output_path: str | None = None,
    timestamp_url: str | None = None,
    expected_certificate: str | None = None,
) -> None:
    try:
        result = _dispatcher(ctx).execute(
            operation,
            artifact_type.lower() if artifact_type else None,
            credentials,
            input_path,
            output_path,
            timestamp_url,
            expected_certificate=expected_certificate,
        )
    except SignatureInvalid as exc:
        _fail(exc, exit_code=2)
    except Exception as exc:
        _fail(exc)
    else:
        click.echo(f"OK: {result.message}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="codesign-toolkit")
@click.option("--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Sign and verify Windows, Java, Adobe AIR and Apple artifacts."""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = load_settings()
    configure_logging(_settings(ctx).logging, verbose=verbose)


@main.command("sign")
@click.option("--type", "artifact_type", required=True, type=_TYPE_CHOICE,
              help="Artifact type.")
@click.option("--in", "input_path", required=True, metavar="PATH", help="File to sign.")
@click.option("--out", "output_path", required=True, metavar="PATH",
              help="Where to write the signed file.")
@click.option("--cert", default=None, metavar="PATH",
              help="Certificate, PKCS#12 or PEM bundle.")
@click.option("--key", default=None, metavar="PATH", help="Private key (Windows).")
@click.option("--keystore", default=None, metavar="PATH", help="Java keystore.")
@click.option("--alias", default=None, help="Java key alias.")
@click.option("--storepass", default=None, help="Java keystore password.")
@click.option("--keypass", "--pass", "keypass", default=None,
              help="Key or PKCS#12 password.")
@click.option("--name", default=None, help="Application name (Windows).")
@click.option("--url", default=None, help="Application URL (Windows).")
@click.option("--identity", default=None,
              help="Signing identity for codesign (Apple).")
@click.option("--timestamp-url", default=None, metavar="URL",
              help="RFC 3161 timestamp server.")
@click.pass_context
def sign_command(
    ctx: click.Context,
    artifact_type: str,
    input_path: str,
    output_path: str,
    cert: str | None,
    key: str | None,
    keystore: str | None,
    alias: str | None,
    storepass: str | None,
    keypass: str | None,
    name: str | None,
    url: str | None,
    identity: str | None,
    timestamp_url: str | None,
) -> None:
    """Sign an artifact and write the signed copy to --out."""
    credentials = _credentials(
        ArtifactType(artifact_type.lower()),
        cert, key, keystore, alias, storepass, keypass, name, url, identity,
    )
    _run(ctx, Operation.sign, artifact_type, credentials, input_path, output_path,
         timestamp_url)


@main.command("verify")
@click.option("--in", "input_path", required=True, metavar="PATH", help="File to verify.")
@click.option("--type", "artifact_type", default=None, type=_TYPE_CHOICE,
              help="Artifact type (default: from the file extension).")
@click.option("--cert", default=None, metavar="PATH",
              help="Expected signer certificate (AIR).")
@click.option("--keystore", default=None, metavar="PATH", help="Java keystore.")
@click.pass_context
def verify_command(
    ctx: click.Context,
    input_path: str,
    artifact_type: str | None,
    cert: str | None,
    keystore: str | None,
) -> None:
    """Verify an artifact's signature.  Exits 2 if the signature is invalid."""
    credentials = JavaCredentials(keystore=keystore) if keystore else None
    _run(ctx, Operation.verify, artifact_type, credentials, input_path,
         expected_certificate=cert)


@main.command("unsign")
@click.option("--in", "input_path", required=True, metavar="PATH")
@click.option("--out", "output_path", required=True, metavar="PATH")
@click.option("--type", "artifact_type", default=None, type=_TYPE_CHOICE)
@click.pass_context
def unsign_command(
    ctx: click.Context, input_path: str, output_path: str, artifact_type: str | None
) -> None:
    """Remove the signature from a Windows binary."""
    _run(ctx, Operation.unsign, artifact_type, None, input_path, output_path)


@main.command("timestamp")
@click.option("--in", "input_path", required=True, metavar="PATH")
@click.option("--type", "artifact_type", default=None, type=_TYPE_CHOICE)
@click.pass_context
def timestamp_command(ctx: click.Context, input_path: str, artifact_type: str | None) -> None:
    """Report whether an artifact's signature carries a timestamp."""
    _run(ctx, Operation.timestamp, artifact_type, None, input_path)


@main.command("doctor")
@click.pass_context
def doctor_command(ctx: click.Context) -> None:
    """List which external signing tools are available."""
    tools = probe_tools(ctx.obj.get("runner") or BackendRunner())
    for tool, found in tools.items():
        click.echo(f"  [{'x' if found else ' '}] {tool}")
    click.echo(f"OK: {sum(tools.values())}/{len(tools)} backend tools available")


# ---------------------------------------------------------------------------
# Jira
# ---------------------------------------------------------------------------


@main.group("jira")
def jira_group() -> None:
    """Create and update Jira tickets (needs JIRA_URL, JIRA_USER, JIRA_TOKEN)."""


def _jira(ctx: click.Context) -> JiraClient:
    return JiraClient(_settings(ctx).tracker, transport=ctx.obj.get("jira_transport"))


@jira_group.command("create")
@click.option("--project", default=None, help="Project key (default: JIRA_PROJECT).")
@click.option("--summary", required=True)
@click.option("--issue-type", default="Task", show_default=True)
@click.option("--description", default="")
@click.option("--priority", default="Medium", show_default=True)
@click.pass_context
def jira_create_command(
    ctx: click.Context,
    project: str | None,
    summary: str,
    issue_type: str,
    description: str,
    priority: str,
) -> None:
    """Create a Jira ticket and print its key."""
    project = project or _settings(ctx).tracker.project
    if not project:
        raise click.UsageError("--project is required when JIRA_PROJECT is not set")
    try:
        key = _jira(ctx).create_ticket(project, issue_type, summary, description, priority)
    except SigningError as exc:
        _fail(exc)
    else:
        click.echo(f"OK: Created Jira ticket {key}")


@jira_group.command("update")
@click.option("--issue", "issue_key", required=True, help="Issue key, e.g. SEC-42.")
@click.option("--comment", default=None)
@click.option("--status", default=None, help="Name of the transition to apply.")
@click.pass_context
def jira_update_command(
    ctx: click.Context, issue_key: str, comment: str | None, status: str | None
) -> None:
    """Comment on and/or transition a Jira ticket."""
    if not comment and not status:
        raise click.UsageError("give --comment, --status or both")
    try:
        _jira(ctx).update_ticket(issue_key, comment=comment, status=status)
    except SigningError as exc:
        _fail(exc)
    else:
        click.echo(f"OK: Updated Jira ticket {issue_key}")


if __name__ == "__main__":
    main()
