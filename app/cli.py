"""
Clipgate CLI - Command line interface for the video generation bridge.

Usage:
    clipgate --help                          Show all commands
    clipgate generate "a cat surfing"        Run one generation job and print the URL
    clipgate generate "@1 waves" -i cat.png  Generate from a reference image
    clipgate credential "sessionid=...; ..." Show how a pasted credential normalizes
    clipgate serve                           Start the API server
"""

import asyncio
from pathlib import Path

import typer

app = typer.Typer(
    name="clipgate",
    help="Clipgate CLI - video generation bridge for jimeng and xyq",
    no_args_is_help=True,
)


# --- Step printer helpers ---


def _print_step(message: str) -> None:
    """Print a step progress message."""
    typer.echo(f"  ... {message}")


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


@app.command()
def generate(
    prompt: str = typer.Argument("", help="Text prompt; @1, @2... refer to reference images"),
    platform: str = typer.Option("jimeng", "--platform", "-p", help="jimeng or xyq"),
    model: str = typer.Option("seedance-2.0", "--model", "-m", help="Model (jimeng only)"),
    ratio: str = typer.Option("4:3", "--ratio", "-r", help="Aspect ratio, e.g. 16:9"),
    duration: int = typer.Option(4, "--duration", "-d", help="Duration in seconds"),
    session: str | None = typer.Option(
        None, "--session", "-s", help="Session token or cookie header (defaults to .env)"
    ),
    images: list[Path] = typer.Option(
        [], "--image", "-i", exists=True, dir_okay=False, help="Reference image (repeatable)"
    ),
    poll_seconds: float = typer.Option(2.0, "--poll", help="Progress refresh interval"),
):
    """Run one generation job in-process and print the final video URL."""
    import httpx

    from app.config import get_config
    from app.core.logging import setup_logging
    from app.generation.base import ReferenceImage
    from app.generation.registry import JobStatus, TaskRegistry
    from app.generation.service import GenerationService, SubmissionError
    from app.platforms.browser import BrowserSessionPool
    from app.platforms.client import generate_web_id

    setup_logging()

    references = [ReferenceImage(data=path.read_bytes(), filename=path.name) for path in images]

    async def run() -> None:
        config = get_config()
        async with httpx.AsyncClient(follow_redirects=True) as http_client:
            browser_pool = BrowserSessionPool(config.browser, web_id=generate_web_id())
            registry = TaskRegistry(config.tasks)
            service = GenerationService.create(registry, http_client, browser_pool, config=config)
            try:
                try:
                    request = service.prepare(
                        prompt=prompt,
                        platform=platform,
                        session_input=session,
                        model=model,
                        ratio=ratio,
                        duration=duration,
                        images=references,
                    )
                except SubmissionError as e:
                    _print_error(e.detail)
                    raise typer.Exit(1) from e

                if request.images and request.platform.key != "jimeng":
                    _print_warning(f"{request.platform.name} ignores reference images")

                job = service.submit(request)
                typer.echo(f"\n🎬 Task {job.id} submitted to {request.platform.name}")

                last_progress = ""
                while not job.is_terminal:
                    if job.progress != last_progress:
                        _print_step(job.progress)
                        last_progress = job.progress
                    await asyncio.sleep(poll_seconds)
                await registry.wait_idle()
            finally:
                await registry.aclose()
                await browser_pool.close()

        if job.status == JobStatus.DONE and job.result is not None:
            _print_success(f"Done in {job.elapsed_seconds(registry.now())}s")
            typer.echo(job.result.data[0].url)
            return

        _print_error(job.error or "Generation failed")
        raise typer.Exit(1)

    asyncio.run(run())


@app.command()
def credential(
    raw: str = typer.Argument(..., help="Session token, name=value pair or full cookie header"),
    platform: str = typer.Option("jimeng", "--platform", "-p", help="jimeng or xyq"),
):
    """Show how a pasted credential normalizes for a platform."""
    from app.core.logging import mask_secret
    from app.platforms.auth import parse_cookie_string, resolve_auth_context
    from app.platforms.config import get_platform

    platform_config = get_platform(platform)
    if platform_config is None:
        _print_error(f"Unsupported platform: {platform}")
        raise typer.Exit(1)

    context = resolve_auth_context(platform_config, raw)
    cookies = parse_cookie_string(raw)

    typer.echo(f"\n🔑 {platform_config.name} credential")
    if not context.is_usable:
        _print_error(f"No session token found, expected `{platform_config.session_cookie_field}`")
        raise typer.Exit(1)

    _print_success(f"Session token: {mask_secret(context.session_id)}")
    if cookies:
        typer.echo(f"  Cookies parsed: {', '.join(cookies)}")
    else:
        typer.echo("  Bare token, default cookies will be synthesized")


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    from app.config import get_settings

    port = port or get_settings().port
    cmd = ["uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
