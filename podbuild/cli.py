"""Thin CLI wrapper for podbuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console

from podbuild import __version__
from podbuild.config import Settings, get_settings, print_settings_json
from podbuild.errors import EXIT_INTERRUPTED, PodbuildError, TemplateError
from podbuild.log import configure_logging
from podbuild.types import TlsPolicy

if TYPE_CHECKING:
    from podbuild.jobs.models import JobSpec

app = typer.Typer(
    name="podbuild",
    help="podbuild - build container images in ephemeral cluster pods",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"podbuild version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """podbuild - build container images in ephemeral cluster pods."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _fail(error: PodbuildError) -> NoReturn:
    """Report a podbuild error and exit with its code."""
    console.print(f"[red]Error ({error.code}): {error}[/red]")
    raise typer.Exit(code=error.exit_code)


@contextmanager
def _sigterm_as_interrupt() -> Iterator[None]:
    """Treat SIGTERM like Ctrl-C so a terminated run still removes its pod."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def interrupt(signum: int, frame: FrameType | None) -> None:
        raise KeyboardInterrupt

    previous = signal.signal(signal.SIGTERM, interrupt)
    try:
        yield
    finally:
        # None means the previous handler was not installed from Python
        signal.signal(
            signal.SIGTERM, signal.SIG_DFL if previous is None else previous
        )


def _effective_settings(**overrides: object) -> Settings:
    """Apply CLI flag overrides (None means not given) on top of settings."""
    settings = get_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    return settings.model_copy(update=update) if update else settings


def _job_spec(
    settings: Settings,
    image: str,
    tag: str,
    name: str | None,
    build_number: str | None,
) -> "JobSpec":
    """Build a JobSpec from settings and CLI arguments."""
    from podbuild.jobs.models import JobSpec
    from podbuild.jobs.naming import generate_job_name

    try:
        job_name = name or generate_job_name(settings.job_prefix, build_number)
        return JobSpec(
            name=job_name,
            namespace=settings.namespace,
            image=image,
            tag=tag,
            context_path=settings.context_path,
            tls_policy=settings.tls_policy,
            builder_image=settings.builder_image,
            registry_secret=settings.registry_secret,
            receiver_container=settings.receiver_container,
            receiver_image=settings.receiver_image,
            active_deadline_seconds=max(1, int(settings.deadline)),
        )
    except (ValidationError, ValueError) as e:
        _fail(TemplateError(f"Invalid job parameters: {e}"))


ImageOption = Annotated[
    str,
    typer.Option("--image", "-i", help="Destination image repository"),
]
TagOption = Annotated[
    str,
    typer.Option("--tag", "-t", help="Destination image tag"),
]
NameOption = Annotated[
    str | None,
    typer.Option("--name", help="Explicit job name (default: generated)"),
]
BuildNumberOption = Annotated[
    str | None,
    typer.Option(
        "--build-number", "-b", envvar="BUILD_NUMBER", help="CI build counter"
    ),
]
NamespaceOption = Annotated[
    str | None,
    typer.Option("--namespace", "-n", help="Namespace for the build pod"),
]
SkipTlsOption = Annotated[
    bool,
    typer.Option("--skip-tls-verify", help="Skip registry TLS verification"),
]
TemplateOption = Annotated[
    Path | None,
    typer.Option("--template", help="Custom manifest template"),
]


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    def show(value: object) -> str:
        return "(not set)" if value is None else str(value)

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Cluster:[/bold]")
    console.print(f"  kubectl:             {show(settings.kubectl_path)}")
    console.print(f"  Kubeconfig:          {show(settings.kubeconfig)}")
    console.print(f"  Context:             {show(settings.kube_context)}")
    console.print(f"  Namespace:           {settings.namespace}")
    console.print(f"  Cluster TLS:         {settings.cluster_tls_policy.value}")
    console.print()
    console.print("[bold]Build job:[/bold]")
    console.print(f"  Builder image:       {settings.builder_image}")
    console.print(f"  Registry TLS:        {settings.tls_policy.value}")
    console.print(f"  Registry secret:     {settings.registry_secret}")
    console.print(f"  Context path:        {settings.context_path}")
    console.print(f"  Template:            {show(settings.template_path)}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Ready timeout:       {settings.ready_timeout}")
    console.print(f"  Poll interval:       {settings.poll_interval}")
    console.print(f"  Transfer attempts:   {settings.transfer_attempts}")
    console.print(f"  Transfer delay:      {settings.transfer_delay}")
    console.print(f"  Transfer timeout:    {settings.transfer_timeout}")
    console.print(f"  Deadline:            {settings.deadline}")
    console.print(f"  Cleanup timeout:     {settings.cleanup_timeout}")


@app.command()
def locate() -> None:
    """Show which kubectl binary will be used."""
    from podbuild.backend.kubectl import locate_kubectl

    settings = get_settings()
    try:
        path = locate_kubectl(settings.kubectl_path, settings.kubectl_candidates)
    except PodbuildError as e:
        _fail(e)
    console.print(str(path))


@app.command()
def render(
    image: ImageOption,
    tag: TagOption,
    name: NameOption = None,
    build_number: BuildNumberOption = None,
    namespace: NamespaceOption = None,
    skip_tls_verify: SkipTlsOption = False,
    template: TemplateOption = None,
) -> None:
    """Render the build pod manifest without submitting it."""
    from podbuild.jobs.manifest import load_template, render_manifest

    settings = _effective_settings(
        namespace=namespace,
        template_path=template,
        tls_policy=TlsPolicy.SKIP if skip_tls_verify else None,
    )
    spec = _job_spec(settings, image, tag, name, build_number)
    try:
        manifest = render_manifest(spec, load_template(settings.template_path))
    except PodbuildError as e:
        _fail(e)
    typer.echo(manifest, nl=False)


@app.command()
def package(
    dockerfile: Annotated[
        Path,
        typer.Option("--dockerfile", "-f", help="Build descriptor"),
    ] = Path("Dockerfile"),
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Pre-built output directory"),
    ] = None,
    dest: Annotated[
        Path | None,
        typer.Option("--dest", "-d", help="Archive path"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Package a build context archive."""
    from podbuild.jobs.archive import build_context_archive

    try:
        archive = build_context_archive(dockerfile, output_dir, dest)
    except PodbuildError as e:
        _fail(e)

    if json_output:
        output = {
            "path": str(archive.path),
            "sha256": archive.sha256,
            "size_bytes": archive.size_bytes,
            "members": list(archive.members),
        }
        typer.echo(json.dumps(output, indent=2))
    else:
        console.print(f"[green]✓ Packaged {archive.path}[/green]")
        console.print(f"  Members: {len(archive.members)}")
        console.print(f"  Size: {archive.size_bytes} bytes")
        console.print(f"  SHA256: {archive.sha256}")


@app.command()
def run(
    image: ImageOption,
    tag: TagOption,
    name: NameOption = None,
    build_number: BuildNumberOption = None,
    namespace: NamespaceOption = None,
    dockerfile: Annotated[
        Path,
        typer.Option("--dockerfile", "-f", help="Build descriptor"),
    ] = Path("Dockerfile"),
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Pre-built output directory"),
    ] = None,
    skip_tls_verify: SkipTlsOption = False,
    template: TemplateOption = None,
    ready_timeout: Annotated[
        float | None,
        typer.Option("--ready-timeout", help="Seconds to wait for the build pod"),
    ] = None,
    deadline: Annotated[
        float | None,
        typer.Option("--deadline", help="Overall deadline in seconds"),
    ] = None,
    deploy: Annotated[
        str | None,
        typer.Option("--deploy", help="Deployment to update after the build"),
    ] = None,
    container: Annotated[
        str | None,
        typer.Option("--container", help="Container to update"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output result as JSON"),
    ] = False,
) -> None:
    """Build and push an image in an ephemeral build pod.

    Exits 0 on success, otherwise with a code identifying the failed stage.
    """
    from podbuild.backend.kubectl import KubectlBackend
    from podbuild.deploy import update_deployment
    from podbuild.jobs.archive import build_context_archive
    from podbuild.jobs.driver import BuildJobDriver

    settings = _effective_settings(
        namespace=namespace,
        template_path=template,
        ready_timeout=ready_timeout,
        deadline=deadline,
        tls_policy=TlsPolicy.SKIP if skip_tls_verify else None,
    )
    spec = _job_spec(settings, image, tag, name, build_number)

    try:
        archive = build_context_archive(
            dockerfile,
            output_dir,
            settings.work_dir / spec.name / "context.tar.gz",
        )
        backend = KubectlBackend(settings)
        driver = BuildJobDriver(settings, backend)
    except PodbuildError as e:
        _fail(e)

    def echo(line: str) -> None:
        if not json_output:
            console.print(line, markup=False, highlight=False, soft_wrap=True)

    try:
        with _sigterm_as_interrupt():
            result = driver.run(spec, archive, on_line=echo)
    except KeyboardInterrupt:
        interrupted = driver.last_result
        if json_output and interrupted is not None:
            typer.echo(json.dumps(interrupted.to_dict(), indent=2))
        else:
            console.print("[yellow]Interrupted[/yellow]")
            if interrupted is not None and not interrupted.cleanup_ok:
                console.print(
                    f"[yellow]Warning: build pod {spec.name} may still exist: "
                    f"{interrupted.cleanup_error}[/yellow]"
                )
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    if result.success and deploy:
        try:
            update_deployment(
                backend,
                deploy,
                container or deploy,
                spec.image_ref,
                timeout=settings.rollout_timeout,
                namespace=settings.namespace,
            )
        except PodbuildError as e:
            result.error_code = e.code
            result.error_message = str(e)
            result.exit_code = e.exit_code

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    elif result.exit_code == 0:
        console.print(f"[green]✓ Built and pushed {spec.image_ref}[/green]")
        if deploy:
            console.print(f"  Deployed to {deploy}")
    else:
        console.print(
            f"[red]✗ Build {spec.name} failed at {result.state.value} "
            f"({result.error_code}): {result.error_message}[/red]"
        )

    if not result.cleanup_ok:
        console.print(
            f"[yellow]Warning: build pod {spec.name} may still exist: "
            f"{result.cleanup_error}[/yellow]"
        )

    if result.exit_code != 0:
        raise typer.Exit(code=result.exit_code)


@app.command("deploy")
def deploy_cmd(
    deployment: Annotated[str, typer.Argument(help="Deployment name")],
    image_ref: Annotated[str, typer.Argument(help="Image reference (image:tag)")],
    container: Annotated[
        str | None,
        typer.Option("--container", "-c", help="Container to update"),
    ] = None,
    namespace: NamespaceOption = None,
) -> None:
    """Roll an existing image out to a deployment."""
    from podbuild.backend.kubectl import KubectlBackend
    from podbuild.deploy import update_deployment

    settings = _effective_settings(namespace=namespace)
    try:
        backend = KubectlBackend(settings)
        update_deployment(
            backend,
            deployment,
            container or deployment,
            image_ref,
            timeout=settings.rollout_timeout,
            namespace=settings.namespace,
        )
    except PodbuildError as e:
        _fail(e)
    console.print(f"[green]✓ {deployment} now runs {image_ref}[/green]")


if __name__ == "__main__":
    app()
