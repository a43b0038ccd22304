"""sealctl - sign and verify video frames and media containers."""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from mediaseal import __version__
from mediaseal.canonical import current_timestamp_ms
from mediaseal.config import Settings
from mediaseal.errors import ProvenanceError
from mediaseal.provenance.frames import FrameSigner, FrameVerifier, extract_frames
from mediaseal.provenance.manifest import HashCertificate
from mediaseal.provenance.signing import Signer
from mediaseal.provenance.wholefile import WholeFileSigner, WholeFileVerifier
from mediaseal.tools.base import FrameExtractor, TagTool, ToolError
from mediaseal.tools.ffmpeg import FfmpegFrameExtractor, FfmpegTagTool

MANIFEST_NAME = "frames_manifest.json"
MANIFEST_CERTIFICATE_NAME = "manifest_hash.txt"
FILE_CERTIFICATE_NAME = "video_hash.txt"
FRAMES_DIR_NAME = "frames"


def handle_error(error: Exception, debug: bool) -> None:
    """Handle errors with structured output.

    Args:
        error: The exception that occurred
        debug: Whether to show full traceback
    """
    if debug:
        traceback.print_exc()
    if isinstance(error, ProvenanceError):
        click.echo(f"Error [{error.kind.value}]: {error.message}", err=True)
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def configure_logging(verbose: bool, debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("mediaseal").setLevel(level)


class StepRunner:
    """Prints numbered steps with their outcome and duration."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.current = 0

    @contextmanager
    def step(self, title: str) -> Iterator[None]:
        self.current += 1
        click.echo(f"STEP {self.current}/{self.total} {title}")
        start = time.perf_counter()
        try:
            yield
        except BaseException:
            click.echo(f"  {click.style('FAIL', fg='red', bold=True)} ({self._elapsed(start)}ms)")
            raise
        click.echo(f"  {click.style('PASS', fg='green', bold=True)} ({self._elapsed(start)}ms)")

    @staticmethod
    def _elapsed(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)


def get_settings(ctx: click.Context) -> Settings:
    """Load settings once per invocation."""
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = Settings.load(ctx.obj.get("config_path"))
    return ctx.obj["settings"]


def make_frame_extractor(settings: Settings) -> FrameExtractor:
    return FfmpegFrameExtractor(settings.ffmpeg_path, settings.frame_pattern, settings.tool_timeout)


def make_tag_tool(settings: Settings) -> TagTool:
    return FfmpegTagTool(settings.ffmpeg_path, settings.tool_timeout)


@click.group()
@click.version_option(version=__version__, prog_name="sealctl")
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, path_type=Path),
              help='YAML settings file (default: $MEDIASEAL_CONFIG)')
@click.option('--debug', is_flag=True, help='Enable debug mode (show full tracebacks)')
@click.option('--verbose', '-v', is_flag=True, help='Log pipeline progress')
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, debug: bool, verbose: bool):
    """Media Seal CLI - tamper-evident timestamps for video frames and files."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['debug'] = debug
    configure_logging(verbose, debug)


@cli.command('sign-frames')
@click.argument('input_video', type=click.Path(path_type=Path))
@click.option('--out', '-o', type=click.Path(path_type=Path), help='Output directory (default: settings output_dir)')
@click.option('--stamp/--no-stamp', default=False, help='Also write a tagged copy of the video')
@click.option('--verify/--no-verify', default=True, help='Re-verify the manifest after signing')
@click.pass_context
def sign_frames(ctx: click.Context, input_video: Path, out: Path | None, stamp: bool, verify: bool):
    """Extract, hash and sign every frame of a video.

    Writes the frame manifest and its detached certificate.

    Examples:
      sealctl sign-frames input.mp4 --out ./output
      sealctl sign-frames input.mp4 --stamp
    """
    debug = ctx.obj.get('debug', False)
    try:
        settings = get_settings(ctx)
        out = out or Path(settings.output_dir)
        frames_dir = out / FRAMES_DIR_NAME
        manifest_path = out / MANIFEST_NAME
        certificate_path = out / MANIFEST_CERTIFICATE_NAME
        steps = StepRunner(5 + int(verify) + int(stamp))

        with steps.step("Load signing key"):
            signer = settings.load_signer()
            click.echo(f"  Signer: {signer.address}")

        start_timestamp_ms = current_timestamp_ms()
        click.echo(f"  Start timestamp: {start_timestamp_ms}")

        with steps.step("Extract frames"):
            filenames = extract_frames(make_frame_extractor(settings), input_video, frames_dir,
                                       settings.frame_extension)
            click.echo(f"  Frames: {len(filenames)}")

        with steps.step("Sign frames"):
            manifest = FrameSigner(signer, settings.workers).sign_frames(
                frames_dir,
                start_timestamp_ms,
                input_video.name,
                filenames=filenames,
                output_dir=str(out),
            )

        with steps.step("Write manifest"):
            manifest.write_json(manifest_path)
            click.echo(f"  Manifest: {manifest_path}")

        if verify:
            with steps.step("Verify manifest and timestamp commitment"):
                verifier = FrameVerifier(settings.workers, settings.limits, settings.frame_extension)
                result = verifier.verify(manifest_path, frames_dir)
                result.raise_for_failure()
                click.echo(f"  Frames verified: {result.frames_valid}/{result.frames_checked}")

        with steps.step("Write certificate"):
            certificate = FrameSigner(signer).certify(manifest_path, manifest)
            certificate.write(certificate_path)
            click.echo(f"  Manifest SHA-256: {certificate.digest}")
            click.echo(f"  Certificate: {certificate_path}")

        if stamp:
            with steps.step("Write stamped video"):
                stamped = out / f"{input_video.stem}_verifiable{input_video.suffix}"
                tags = {
                    "artist": certificate.digest,
                    "album": f"Timestamp - {start_timestamp_ms}",
                    "title": "Verifiable Video",
                }
                make_tag_tool(settings).write_tags(input_video, stamped, tags, clear_existing=False)
                click.echo(f"  Stamped video: {stamped}")

        click.echo(f"Results written to {out}")

    except (ProvenanceError, ToolError, ValueError) as e:
        handle_error(e, debug)


@cli.command('verify-frames')
@click.argument('manifest_path', type=click.Path(path_type=Path))
@click.option('--frames-dir', '-f', type=click.Path(path_type=Path),
              help="Frame directory (default: the manifest's inputDir next to it)")
@click.option('--certificate', type=click.Path(path_type=Path), help='Detached manifest certificate to check')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def verify_frames(ctx: click.Context, manifest_path: Path, frames_dir: Path | None,
                  certificate: Path | None, as_json: bool):
    """Verify a frame manifest against the frames on disk.

    Examples:
      sealctl verify-frames ./output/frames_manifest.json
      sealctl verify-frames manifest.json --certificate manifest_hash.txt
    """
    debug = ctx.obj.get('debug', False)
    try:
        settings = get_settings(ctx)
        verifier = FrameVerifier(settings.workers, settings.limits, settings.frame_extension)
        result = verifier.verify(manifest_path, frames_dir, certificate)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))
        else:
            status = click.style("ACCEPTED", fg="green") if result.valid else click.style("REJECTED", fg="red")
            click.echo(f"Verification Result: {status}")
            if result.failed_state:
                click.echo(f"  Failed at: {result.failed_state.value}")
            click.echo(f"  Frames checked: {result.frames_checked}")
            click.echo(f"  Frames valid: {result.frames_valid}")
            for check in result.frame_failures:
                click.echo(f"    - [{check.index}] {check.filename}: {check.error}")
            if result.commitment:
                click.echo(f"  Timestamp committed (+{result.commitment.offset_ms}ms rejected): "
                           f"{result.commitment.committed}")
            if result.certificate_checked:
                click.echo("  Certificate: OK")

        result.raise_for_failure()

    except (ProvenanceError, ValueError) as e:
        handle_error(e, debug)


@cli.command('sign-file')
@click.argument('input_path', type=click.Path(path_type=Path))
@click.option('--out', '-o', type=click.Path(path_type=Path), help='Output container path')
@click.option('--certificate/--no-certificate', default=False,
              help=f'Also write {FILE_CERTIFICATE_NAME} next to the output')
@click.pass_context
def sign_file(ctx: click.Context, input_path: Path, out: Path | None, certificate: bool):
    """Embed a signed timestamp and hash into a media container.

    Examples:
      sealctl sign-file input.mp4
      sealctl sign-file input.mp4 --out signed.mp4 --certificate
    """
    debug = ctx.obj.get('debug', False)
    try:
        settings = get_settings(ctx)
        if out is None:
            out = Path(settings.output_dir) / f"{input_path.stem}_verifiable{input_path.suffix}"
        steps = StepRunner(2 + int(certificate))

        with steps.step("Load signing key"):
            signer = settings.load_signer()
            click.echo(f"  Signer: {signer.address}")

        with steps.step("Canonicalize, sign and embed payload"):
            file_signer = WholeFileSigner(signer, make_tag_tool(settings),
                                          settings.timestamp_tag, settings.payload_tag)
            signed = file_signer.sign_file(input_path, out)
            click.echo(f"  Timestamp: {signed.payload.timestamp_ms}")
            click.echo(f"  SHA-256: {signed.payload.file_hash}")
            click.echo(f"  Output: {out}")

        if certificate:
            with steps.step("Write certificate"):
                certificate_path = out.parent / FILE_CERTIFICATE_NAME
                signed.certificate(input_path.name).write(certificate_path)
                click.echo(f"  Certificate: {certificate_path}")

    except (ProvenanceError, ValueError) as e:
        handle_error(e, debug)


@cli.command('verify-file')
@click.argument('container', type=click.Path(path_type=Path))
@click.argument('expected_timestamp', required=False)
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def verify_file(ctx: click.Context, container: Path, expected_timestamp: str | None, as_json: bool):
    """Verify the payload embedded in a media container.

    Examples:
      sealctl verify-file signed.mp4
      sealctl verify-file signed.mp4 1700000000000
    """
    debug = ctx.obj.get('debug', False)
    try:
        settings = get_settings(ctx)
        verifier = WholeFileVerifier(make_tag_tool(settings), settings.timestamp_tag,
                                     settings.payload_tag, settings.limits)
        result = verifier.verify(container, expected_timestamp)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))
        else:
            status = click.style("VALID", fg="green") if result.valid else click.style("INVALID", fg="red")
            click.echo(f"Verification Result: {status}")
            if result.payload:
                click.echo(f"  Timestamp: {result.payload.timestamp_ms}")
                click.echo(f"  Signer: {result.payload.signer_address}")
                click.echo(f"  Expected SHA-256: {result.payload.file_hash}")
            if result.actual_hash:
                click.echo(f"  Actual SHA-256:   {result.actual_hash}")
            click.echo(f"  Steps passed: {', '.join(result.steps) or 'none'}")

        result.raise_for_failure()

    except (ProvenanceError, ValueError) as e:
        handle_error(e, debug)


@cli.command('verify-certificate')
@click.argument('certificate_path', type=click.Path(path_type=Path))
@click.argument('target', type=click.Path(path_type=Path))
@click.option('--address', required=True, help='Expected signer address')
@click.pass_context
def verify_certificate(ctx: click.Context, certificate_path: Path, target: Path, address: str):
    """Check a detached certificate against the file it names.

    Examples:
      sealctl verify-certificate manifest_hash.txt frames_manifest.json --address 0x...
    """
    debug = ctx.obj.get('debug', False)
    try:
        certificate = HashCertificate.read(certificate_path)
        if not certificate.verify(target, address):
            click.echo("  Warning: certificate carries no signature; checked digest only", err=True)
        click.echo(f"Certificate valid: {certificate.input_name} @ {certificate.timestamp_ms}")

    except (ProvenanceError, ValueError) as e:
        handle_error(e, debug)


@cli.command('generate-key')
def generate_key():
    """Generate a fresh secp256k1 signing key.

    Prints it in environment-variable form together with its address.
    """
    signer = Signer.generate()
    click.echo(f"MEDIASEAL_PRIVATE_KEY={signer.private_key_hex()}")
    click.echo(f"Address: {signer.address}")


def main() -> None:
    """Entry point."""
    cli()


if __name__ == '__main__':
    main()
