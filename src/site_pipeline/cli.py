# cli.py
import json
import logging
import sys

import click
from pydantic import ValidationError

from site_pipeline.exceptions import SitePipelineError
from site_pipeline.settings import get_settings

logger = logging.getLogger(__name__)


def _deployer():
    from site_pipeline.aws.deploy import StackDeployer
    return StackDeployer(get_settings())


def _fail(error: Exception):
    click.echo(f"❌ {error}", err=True)
    sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level):
    """Deploy and operate the site pipeline stack"""
    try:
        settings = get_settings()
    except ValidationError as e:
        _fail(e)
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
def show_config():
    """Show current configuration"""
    click.echo("Current Configuration:")
    for key, value in get_settings().as_display_dict().items():
        click.echo(f"  {key}: {value}")


@cli.command()
@click.option("--output", "-o", default=None, help="Write the template to a file instead of stdout")
@click.option("--format", "fmt", type=click.Choice(["json", "yaml"]), default="json",
              help="Template format")
def synth(output, fmt):
    """Synthesize the CloudFormation template"""
    try:
        deployer = _deployer()
        if output:
            path = deployer.write_template(output, fmt)
            click.echo(f"✅ Template written to {path}")
            return

        template = deployer.synth()
        if fmt == "yaml":
            import yaml
            click.echo(yaml.safe_dump(template, sort_keys=False))
        else:
            click.echo(json.dumps(template, indent=2))
    except SitePipelineError as e:
        _fail(e)


@cli.command()
@click.option("--export-env", default=None, help="Export stack outputs to this env file")
def deploy(export_env):
    """Create or update the stack"""
    try:
        deployer = _deployer()
        result = deployer.deploy()
    except SitePipelineError as e:
        _fail(e)

    click.echo(f"✅ Stack {result['stack_name']} deployed")
    for key, value in result["outputs"].items():
        click.echo(f"  {key}: {value}")
    if export_env:
        deployer.state_manager.export_env_file(export_env)


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def destroy(yes):
    """Empty the buckets and delete the stack"""
    settings = get_settings()
    if not yes:
        click.confirm(f"Delete stack {settings.stack_name} and all deployed content?", abort=True)
    try:
        _deployer().destroy()
    except SitePipelineError as e:
        _fail(e)
    click.echo(f"✅ Stack {settings.stack_name} destroyed")


@cli.command()
def status():
    """Show stack and pipeline stage status"""
    try:
        result = _deployer().status()
    except SitePipelineError as e:
        _fail(e)

    click.echo(f"Stack: {result['stack_name']} ({result['stack_status']})")
    for stage in result["stages"]:
        click.echo(f"  {stage['stage']}: {stage['status']}")


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
def publish(directory):
    """Upload a local build directory to the site bucket"""
    try:
        count = _deployer().publish(directory)
    except SitePipelineError as e:
        _fail(e)
    click.echo(f"✅ Uploaded {count} files")


@cli.command()
@click.argument("paths", nargs=-1)
def invalidate(paths):
    """Invalidate cached paths on the distribution (default: /*)"""
    try:
        invalidation_id = _deployer().invalidate(list(paths) or None)
    except SitePipelineError as e:
        _fail(e)
    click.echo(f"✅ Invalidation {invalidation_id} created")


if __name__ == "__main__":
    cli()
