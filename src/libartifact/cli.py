"""CLI for libartifact."""

import json
import sys
from functools import wraps
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from . import digest as digests
from .config import load_config
from .errors import ArtifactError
from .facade import ArtifactFacade
from .logging_config import setup_logging
from .options import (
    ArtifactAddOptions,
    ArtifactExtractOptions,
    ArtifactInspectOptions,
    ArtifactPullOptions,
    ArtifactPushOptions,
    ArtifactRemoveOptions,
    DecryptConfig,
)
from .reference import ArtifactReference

console = Console()


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "kB", "MB", "GB"):
        if value < 1000 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1000
    return f"{size}B"


def _parse_annotations(values: tuple[str, ...]) -> dict[str, str]:
    annotations = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"{item!r} is not KEY=VALUE", param_hint="--annotation")
        annotations[key] = value
    return annotations


def handle_errors(func):
    """Print artifact errors in red and exit 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (ArtifactError, OSError) as e:
            console.print(f"Error: {e}", style="red", markup=False)
            sys.exit(1)
    return wrapper


def _facade(ctx: click.Context) -> ArtifactFacade:
    obj = ctx.ensure_object(dict)
    if "facade" not in obj:
        obj["facade"] = ArtifactFacade.from_config(obj["config"])
    return obj["facade"]


def registry_options(func):
    """Options shared by commands that talk to a registry."""
    options = [
        click.option("--authfile", "auth_file", type=click.Path(), help="Path of the registry auth file"),
        click.option("--cert-dir", type=click.Path(), help="Directory with ca.crt / client.cert / client.key"),
        click.option("--creds", help="USERNAME:PASSWORD for the registry"),
        click.option("--tls-verify/--no-tls-verify", default=None, help="Require HTTPS and verify certificates"),
        click.option("--retry", "max_retries", type=int, default=None, help="Retries on transient failures"),
        click.option("--retry-delay", default=None, help="Delay between retries, e.g. 2s"),
        click.option("--quiet", "-q", is_flag=True, help="Suppress progress output"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="libartifact")
@click.option("--config", "config_path", type=click.Path(exists=True), help="YAML configuration file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...)")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]):
    """libartifact – manage OCI artifacts locally and in registries."""
    config = load_config(config_path)
    setup_logging(log_level or config.log_level)
    ctx.ensure_object(dict)["config"] = config


@cli.command()
@click.argument("name")
@click.argument("files", nargs=-1, type=click.Path())
@click.option("--annotation", "-a", multiple=True, help="KEY=VALUE annotation (repeatable)")
@click.option("--type", "artifact_type", default=None, help="Artifact type (media type)")
@click.option("--append", is_flag=True, help="Append files to an existing artifact")
@click.option("--file-type", default=None, help="Media type of the added files")
@click.pass_context
@handle_errors
def add(ctx, name, files, annotation, artifact_type, append, file_type):
    """Add files to a local artifact."""
    report = _facade(ctx).add(
        name,
        list(files),
        ArtifactAddOptions(
            annotations=_parse_annotations(annotation),
            artifact_type=artifact_type,
            append=append,
            file_type=file_type,
        ),
    )
    click.echo(report.artifact_digest)


@cli.command()
@click.argument("name")
@click.argument("destination", required=False)
@registry_options
@click.option("--digestfile", "digest_file", type=click.Path(), help="Write the pushed digest to this file")
@click.option("--encryption-key", multiple=True, help="Key specifier, e.g. fernet:/path/key (repeatable)")
@click.option("--encrypt-layer", multiple=True, type=int, help="Blob index to encrypt (repeatable)")
@click.option("--sign-by-sigstore", "sigstore_param_file", type=click.Path(), help="Sigstore parameter file")
@click.option("--sign-passphrase-file", type=click.Path(), help="Passphrase file for signing")
@click.pass_context
@handle_errors
def push(ctx, name, destination, auth_file, cert_dir, creds, tls_verify, max_retries, retry_delay, quiet,
         digest_file, encryption_key, encrypt_layer, sigstore_param_file, sign_passphrase_file):
    """Push a local artifact to a registry."""
    _facade(ctx).push(
        name,
        destination,
        ArtifactPushOptions(
            auth_file_path=auth_file,
            cert_dir_path=cert_dir,
            credentials_cli=creds,
            tls_verify_cli=tls_verify,
            max_retries=max_retries,
            retry_delay=retry_delay,
            quiet=quiet,
            digest_file=digest_file,
            encryption_keys=list(encryption_key),
            encrypt_layers=list(encrypt_layer),
            sign_by_sigstore_param_file=sigstore_param_file,
            sign_passphrase_file=sign_passphrase_file,
        ),
    )


@cli.command()
@click.argument("ref")
@registry_options
@click.option("--decryption-key", multiple=True, help="Key specifier for encrypted blobs (repeatable)")
@click.option("--signature-policy", type=click.Path(), help="Signature policy file")
@click.pass_context
@handle_errors
def pull(ctx, ref, auth_file, cert_dir, creds, tls_verify, max_retries, retry_delay, quiet,
         decryption_key, signature_policy):
    """Pull an artifact from a registry."""
    _facade(ctx).pull(
        ref,
        ArtifactPullOptions(
            auth_file_path=auth_file,
            cert_dir_path=cert_dir,
            credentials_cli=creds,
            insecure_skip_tls_verify=None if tls_verify is None else not tls_verify,
            max_retries=max_retries,
            retry_delay=retry_delay,
            quiet=quiet,
            signature_policy_path=signature_policy,
            decrypt_config=DecryptConfig(keys=list(decryption_key)) if decryption_key else None,
        ),
    )


@cli.command(name="ls")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
@handle_errors
def list_artifacts(ctx, output_format):
    """List local artifacts."""
    reports = _facade(ctx).list()

    if output_format == "json":
        click.echo(json.dumps([r.to_dict() for r in reports], indent=2))
        return

    table = Table(title="Artifacts")
    table.add_column("Repository", style="cyan")
    table.add_column("Tag")
    table.add_column("Digest")
    table.add_column("Size", justify="right")

    for report in reports:
        artifact = report.artifact
        ref = ArtifactReference.parse(artifact.name)
        table.add_row(
            ref.repository_name,
            ref.tag or "<none>",
            digests.short(artifact.digest),
            _format_size(artifact.size),
        )

    console.print(table)


@cli.command()
@click.argument("ref")
@click.option("--remote", is_flag=True, help="Inspect the artifact in its registry")
@registry_options
@click.pass_context
@handle_errors
def inspect(ctx, ref, remote, auth_file, cert_dir, creds, tls_verify, max_retries, retry_delay, quiet):
    """Show an artifact's manifest as JSON."""
    report = _facade(ctx).inspect(
        ref,
        ArtifactInspectOptions(
            remote=remote,
            auth_file_path=auth_file,
            cert_dir_path=cert_dir,
            credentials_cli=creds,
            insecure_skip_tls_verify=None if tls_verify is None else not tls_verify,
            max_retries=max_retries,
            retry_delay=retry_delay,
            quiet=quiet,
        ),
    )
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command()
@click.argument("ref")
@click.argument("target", type=click.Path())
@click.option("--title", default=None, help="Extract the blob with this title")
@click.option("--digest", default=None, help="Extract the blob with this digest")
@click.pass_context
@handle_errors
def extract(ctx, ref, target, title, digest):
    """Extract blobs of an artifact to a file or directory."""
    written = _facade(ctx).extract_to(ref, target, ArtifactExtractOptions(title=title, digest=digest))
    for path in written:
        click.echo(str(path))


@cli.command()
@click.argument("refs", nargs=-1)
@click.option("--all", "-a", "remove_all", is_flag=True, help="Remove all artifacts")
@click.pass_context
@handle_errors
def rm(ctx, refs, remove_all):
    """Remove local artifacts."""
    report = _facade(ctx).remove(list(refs), ArtifactRemoveOptions(all=remove_all))
    for removed in report.artifact_digests:
        click.echo(removed)


def main(argv: Optional[list[str]] = None) -> None:
    cli(args=argv)


if __name__ == "__main__":
    main()
