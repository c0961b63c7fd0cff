"""Command line helpers for preparing Device Farm runs."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click

from farmrun.config import get_settings
from farmrun.errors import FarmrunError
from farmrun.services.bundles import discover_test_suites, package_test_bundle
from farmrun.services.pipeline import get_pipeline

LOGGER = logging.getLogger("farmrun.cli")


@click.group()
@click.option("--verbose", is_flag=True, help="Log debug output")
def cli(verbose: bool) -> None:
    """farmrun - run mobile test suites on AWS Device Farm"""
    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@cli.command("package-tests")
@click.argument(
    "project_root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the zip to this path",
)
@click.option("--no-upload", is_flag=True, help="Only package, do not store the bundle")
def package_tests(project_root: Path, output: Optional[Path], no_upload: bool) -> None:
    """Package the test project and store it as the run's test bundle."""
    try:
        bundle = package_test_bundle(project_root, output)
        suites = discover_test_suites(bundle)
        if not no_upload:
            pipeline = get_pipeline()
            key = pipeline.settings.test_bundle_key
            pipeline.tests.put(key, bundle, content_type="application/zip")
            click.echo(f"Stored test bundle as {key} ({len(bundle)} bytes)")
    except FarmrunError as exc:
        click.echo(click.style(f"✗ {exc}", fg="red"), err=True)
        sys.exit(1)

    cases = sum(len(names) for names in suites.values())
    click.echo(click.style(f"✓ Packaged {len(suites)} test files with {cases} cases", fg="green"))
    for path, names in suites.items():
        click.echo(f"  {path} ({len(names)})")


if __name__ == "__main__":
    cli()
