import click
import logging
from shakenfist_utilities import logs
import sys

from layerstrap import digest as digest_codec
from layerstrap import errors
from layerstrap.pipeline import PipelineBuilder, PipelineError
from layerstrap import uri


LOG = logs.setup_console(__name__)


@click.group()
@click.option('--verbose', is_flag=True)
@click.option('--os', default='linux')
@click.option('--architecture', default='amd64')
@click.option('--variant', default='')
@click.option('--username', default=None, envvar='LAYERSTRAP_USERNAME',
              help='Username for registry authentication')
@click.option('--password', default=None, envvar='LAYERSTRAP_PASSWORD',
              help='Password for registry authentication')
@click.option('--insecure', is_flag=True, default=False,
              help='Use HTTP instead of HTTPS for registry connections')
@click.option('--temp-dir', default=None, envvar='LAYERSTRAP_TEMP_DIR',
              help='Directory to spool blobs in while they are verified')
@click.option('--prefetch', default=1, type=int,
              help='Number of blobs to download ahead of the current layer')
@click.option('--max-layer-size', default=None, type=int,
              help='Refuse layers which decompress to more bytes than this')
@click.option('--max-entry-size', default=None, type=int,
              help='Refuse layers containing files larger than this')
@click.pass_context
def cli(ctx, verbose=None, os=None, architecture=None, variant=None,
        username=None, password=None, insecure=None, temp_dir=None,
        prefetch=None, max_layer_size=None, max_entry_size=None):
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
        LOG.setLevel(logging.DEBUG)

    if not ctx.obj:
        ctx.obj = {}
    ctx.obj['OS'] = os
    ctx.obj['ARCHITECTURE'] = architecture
    ctx.obj['VARIANT'] = variant
    ctx.obj['USERNAME'] = username
    ctx.obj['PASSWORD'] = password
    ctx.obj['INSECURE'] = insecure
    ctx.obj['TEMP_DIR'] = temp_dir
    ctx.obj['PREFETCH'] = prefetch
    ctx.obj['MAX_LAYER_SIZE'] = max_layer_size
    ctx.obj['MAX_ENTRY_SIZE'] = max_entry_size


def _fail(message):
    click.echo('Error: %s' % message, err=True)
    sys.exit(1)


@click.command('materialize')
@click.argument('source')
@click.argument('destination')
@click.pass_context
def materialize_cmd(ctx, source, destination):
    """Materialize a container image.

    SOURCE is a URI for the image and DESTINATION is where to put it.

    \b
    Source URI schemes:
      registry://HOST/IMAGE:TAG     - Docker/OCI registry
      registry://HOST/IMAGE@DIGEST  - Docker/OCI registry, pinned
      bundle://PATH                 - A bundle written by layerstrap

    \b
    Destination URI schemes:
      dir://PATH                    - Extract the merged filesystem
      bundle://PATH[?name=NAME]     - Save a digest named bundle in PATH

    \b
    Examples:
      layerstrap materialize registry://docker.io/library/busybox:latest dir://rootfs
      layerstrap materialize registry://ghcr.io/owner/repo:v1 bundle://images
      layerstrap materialize bundle://images/sha256_abc... dir://rootfs
    """
    try:
        builder = PipelineBuilder(ctx)
        materializer, reference, target = builder.build_pipeline(
            source, destination)
    except (PipelineError, uri.URIParseError,
            errors.MaterializationError) as e:
        _fail(e)

    result = materializer.materialize(reference, target)
    for warning in result.warnings:
        click.echo('Warning: %s' % warning, err=True)
    if not result.success:
        _fail('%s: %s' % (result.error.kind, result.error))
    click.echo(result.target_path)


cli.add_command(materialize_cmd)


@click.command('manifest')
@click.argument('source')
@click.pass_context
def manifest_cmd(ctx, source):
    """Print the image manifest for SOURCE."""
    try:
        builder = PipelineBuilder(ctx)
        src, reference = builder.build_source(source)
        manifest = builder.build_materializer(src).resolve_manifest(reference)
    except (PipelineError, uri.URIParseError,
            errors.MaterializationError) as e:
        _fail(e)
    click.echo(manifest.raw.decode('utf-8'))


cli.add_command(manifest_cmd)


@click.command('digest')
@click.argument('source')
@click.pass_context
def digest_cmd(ctx, source):
    """Print the manifest digest of SOURCE."""
    try:
        builder = PipelineBuilder(ctx)
        src, reference = builder.build_source(source)
        d = src.get_digest(reference)
    except (PipelineError, uri.URIParseError,
            errors.MaterializationError) as e:
        _fail(e)
    click.echo(digest_codec.format_digest(d))


cli.add_command(digest_cmd)


@click.command('digest-name')
@click.argument('source')
@click.pass_context
def digest_name_cmd(ctx, source):
    """Print the filesystem safe name for SOURCE.

    SOURCE is either a digest (sha256:...) or a source URI. This is the
    name a bundle of the image is saved under.
    """
    try:
        if '://' not in source:
            click.echo(digest_codec.sanitize_for_filesystem(
                digest_codec.parse(source)))
            return

        builder = PipelineBuilder(ctx)
        src, reference = builder.build_source(source)
        name = builder.build_materializer(src).resolve_digest_name(reference)
    except (PipelineError, uri.URIParseError,
            errors.MaterializationError) as e:
        _fail(e)
    click.echo(name)


cli.add_command(digest_name_cmd)
