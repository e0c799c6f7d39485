"""CLI interface for the asset pipeline."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import click

from .api import B2Client
from .catalog import AssetCatalog
from .config import (
    ENV_APPLICATION_KEY,
    ENV_BUCKET_NAME,
    ENV_CDN_BASE_URL,
    ENV_KEY_ID,
    ENV_PATH_PREFIX,
    ENV_PROJECTS_FOLDER,
    config,
)
from .exceptions import AssetSyncError, ParseError
from .export import ExportTools, MasterMaterialsConfig
from .ledger import UploadLedger
from .output import OutputFormatter
from .utils import format_timestamp
from .workflow import AssetPipeline, UploadReport

logger = logging.getLogger(__name__)

catalog_option = click.option(
    "--catalog",
    "-c",
    "catalog_path",
    envvar="ASSETSYNC_CATALOG",
    required=True,
    type=click.Path(dir_okay=False),
    help="Catalog snapshot (JSON) of the project",
)
no_progress_option = click.option(
    "--no-progress", is_flag=True, help="Disable progress bars"
)


def _load_catalog(ctx: Any, catalog_path: str) -> AssetCatalog:
    out: OutputFormatter = ctx.obj["out"]
    try:
        return AssetCatalog.load(catalog_path)
    except ParseError as e:
        out.error(str(e))
        ctx.exit(1)
        raise


def _save_catalog(ctx: Any, catalog: AssetCatalog, catalog_path: str) -> None:
    out: OutputFormatter = ctx.obj["out"]
    try:
        catalog.save(catalog_path)
    except OSError as e:
        out.error(f"Failed to save catalog {catalog_path}: {e}")
        ctx.exit(1)


def _build_pipeline(ctx: Any, catalog: AssetCatalog) -> AssetPipeline:
    out: OutputFormatter = ctx.obj["out"]
    try:
        upload_ledger = UploadLedger(config.ledger_path)
    except AssetSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        raise
    return AssetPipeline(
        catalog,
        settings=config.b2_settings(),
        projects_folder=config.projects_folder,
        ledger=upload_ledger,
        tools=ExportTools.from_config(config),
    )


async def _run_and_close(pipeline: AssetPipeline, coro: Any) -> Any:
    try:
        return await coro
    finally:
        await pipeline.close()
        if pipeline.ledger is not None:
            pipeline.ledger.close()


def _run_command(ctx: Any, pipeline: AssetPipeline, coro: Any) -> Any:
    """Run a pipeline coroutine, turning pipeline errors into exit code 1."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        return asyncio.run(_run_and_close(pipeline, coro))
    except KeyboardInterrupt:
        out.warning("Cancelled by user")
        ctx.exit(130)
    except AssetSyncError as e:
        out.error(str(e))
        ctx.exit(1)


def _report_upload(out: OutputFormatter, report: UploadReport) -> None:
    if out.json_output:
        out.output_json(
            {
                "uploaded": report.batch.success_count,
                "skipped": report.batch.skipped_count,
                "failed": report.batch.failed_count,
                "cancelled": report.batch.cancelled_count,
                "duration": report.batch.duration,
                "mapping_uploaded": bool(
                    report.mapping_result and report.mapping_result.success
                ),
                "resources_updated": report.updated_resources,
                "errors": report.batch.errors + report.errors,
            }
        )
        return
    if report.success:
        out.success("Upload complete")
    else:
        out.warning("Upload finished with errors")
    out.print(report.message())


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """assetsync - Export game assets and sync them to Backblaze B2."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("assetsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option("--key-id", prompt="B2 application key ID", help="B2 key ID")
@click.option(
    "--application-key",
    prompt="B2 application key",
    hide_input=True,
    help="B2 application key",
)
@click.option("--bucket", prompt="Bucket name", help="B2 bucket name")
@click.option(
    "--projects-folder",
    prompt="Projects folder",
    type=click.Path(file_okay=False),
    help="Local folder that export output is written below",
)
@click.option("--cdn-url", default="", help="CDN base URL for public links")
@click.option("--path-prefix", default="", help="Key prefix inside the bucket")
@click.option(
    "--no-verify", is_flag=True, help="Save without checking the credentials"
)
@click.pass_context
def init(
    ctx: Any,
    key_id: str,
    application_key: str,
    bucket: str,
    projects_folder: str,
    cdn_url: str,
    path_prefix: str,
    no_verify: bool,
) -> None:
    """Initialize assetsync configuration.

    Stores the B2 credentials in ~/.config/assetsync/config.
    """
    out: OutputFormatter = ctx.obj["out"]

    if not no_verify:
        out.info("Validating B2 credentials...")

        async def verify() -> None:
            async with B2Client() as client:
                await client.authorize(key_id, application_key)

        try:
            asyncio.run(verify())
            out.success("✓ Credentials are valid")
        except AssetSyncError as e:
            out.error(f"Credential validation failed: {e}")
            if not click.confirm("Save configuration anyway?", default=False):
                out.warning("Configuration cancelled.")
                ctx.exit(1)

    try:
        config.save(
            {
                ENV_KEY_ID: key_id,
                ENV_APPLICATION_KEY: application_key,
                ENV_BUCKET_NAME: bucket,
                ENV_PROJECTS_FOLDER: str(Path(projects_folder).expanduser()),
                ENV_CDN_BASE_URL: cdn_url,
                ENV_PATH_PREFIX: path_prefix,
            }
        )
    except OSError as e:
        out.error(f"Initialization failed: {e}")
        ctx.exit(1)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "✓ Configuration saved successfully"),
            ("Config file", str(config.get_config_path())),
        ],
    )


@main.command()
@catalog_option
@click.option(
    "--materials-only", is_flag=True, help="Write material JSONs only, no conversion"
)
@click.option("--no-lods", is_flag=True, help="Skip LOD generation")
@click.option("--lod-levels", type=int, default=2, help="Number of LODs (default: 2)")
@click.option(
    "--quality", type=int, default=128, help="KTX2 quality level 1-255 (default: 128)"
)
@click.option("--no-orm", is_flag=True, help="Skip packed ORM texture generation")
@click.option(
    "--master-materials",
    type=click.Path(exists=True, dir_okay=False),
    help="Master materials config (JSON)",
)
@click.option(
    "--upload", "upload_after", is_flag=True, help="Upload the exported files"
)
@no_progress_option
@click.pass_context
def export(
    ctx: Any,
    catalog_path: str,
    materials_only: bool,
    no_lods: bool,
    lod_levels: int,
    quality: int,
    no_orm: bool,
    master_materials: Optional[str],
    upload_after: bool,
    no_progress: bool,
) -> None:
    """Export every resource marked for export."""
    from .cli_progress import PipelineProgressDisplay

    out: OutputFormatter = ctx.obj["out"]
    if not 1 <= quality <= 255:
        out.error("Quality must be between 1 and 255")
        ctx.exit(1)

    catalog = _load_catalog(ctx, catalog_path)
    pipeline = _build_pipeline(ctx, catalog)

    async def run() -> Any:
        masters = None
        masters_folder = None
        if master_materials:
            masters = MasterMaterialsConfig.load(master_materials)
            masters_folder = Path(master_materials).parent
        options = pipeline.export_options(
            generate_lods=not no_lods,
            lod_levels=lod_levels,
            texture_quality=quality,
            generate_orm_textures=not no_orm,
            use_packed_textures=not no_orm,
            master_materials=masters,
            master_materials_folder=masters_folder,
        )
        if materials_only:
            options = options.materials_only()

        show_progress = not (no_progress or out.quiet or out.json_output)
        if show_progress:
            with PipelineProgressDisplay("Exporting") as display:
                summary = await pipeline.export_selected(
                    options, progress_callback=display.on_export_progress
                )
        else:
            summary = await pipeline.export_selected(options)

        report = None
        if upload_after and summary.exported_files:
            if show_progress:
                with PipelineProgressDisplay("Uploading") as display:
                    report = await pipeline.upload_exported_files(
                        summary.exported_files,
                        progress_callback=display.on_upload_progress,
                    )
            else:
                report = await pipeline.upload_exported_files(summary.exported_files)
        return summary, report

    summary, report = _run_command(ctx, pipeline, run())
    _save_catalog(ctx, catalog, catalog_path)

    if out.json_output:
        out.output_json(
            {
                "success": summary.success_count,
                "failed": summary.fail_count,
                "files": [str(p) for p in summary.exported_files],
                "mapping": str(summary.mapping_path) if summary.mapping_path else None,
                "failures": [
                    {"name": name, "error": error} for name, error in summary.failures
                ],
            }
        )
    else:
        out.print_summary(
            "Export Complete",
            [
                ("Exported", f"{summary.success_count} of {summary.total_items}"),
                ("Failed", str(summary.fail_count)),
                ("Files", str(len(summary.exported_files))),
                ("Mapping", str(summary.mapping_path or "-")),
            ],
        )
        for name, error in summary.failures:
            out.warning(f"{name}: {error}")
        if report is not None:
            _report_upload(out, report)

    if summary.has_errors or (report is not None and not report.success):
        ctx.exit(1)


@main.command("mark-related")
@catalog_option
@click.pass_context
def mark_related(ctx: Any, catalog_path: str) -> None:
    """Mark materials, textures and models related to the marked ones."""
    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    changed = AssetPipeline(catalog).mark_related()
    _save_catalog(ctx, catalog, catalog_path)
    if out.json_output:
        out.output_json({"marked": changed})
    else:
        out.success(f"Marked {changed} related resources")


@main.command("clear-marks")
@catalog_option
@click.pass_context
def clear_marks(ctx: Any, catalog_path: str) -> None:
    """Clear every export mark."""
    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    changed = AssetPipeline(catalog).clear_marks()
    _save_catalog(ctx, catalog, catalog_path)
    if out.json_output:
        out.output_json({"cleared": changed})
    else:
        out.success(f"Cleared {changed} export marks")


@main.command()
@catalog_option
@click.argument("files", nargs=-1, required=True, type=click.Path())
@no_progress_option
@click.pass_context
def upload(ctx: Any, catalog_path: str, files: tuple[str, ...], no_progress: bool) -> None:
    """Upload exported files, then the project's mapping.json.

    FILES: Files below the project's server folder
    """
    from .cli_progress import PipelineProgressDisplay

    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    pipeline = _build_pipeline(ctx, catalog)

    async def run() -> UploadReport:
        if no_progress or out.quiet or out.json_output:
            return await pipeline.upload_exported_files(files)
        with PipelineProgressDisplay("Uploading") as display:
            return await pipeline.upload_exported_files(
                files, progress_callback=display.on_upload_progress
            )

    report = _run_command(ctx, pipeline, run())
    _save_catalog(ctx, catalog, catalog_path)
    _report_upload(out, report)
    if not report.success:
        ctx.exit(1)


@main.command("upload-dir")
@catalog_option
@click.option("--pattern", "-p", default="*", help="File name pattern (default: *)")
@no_progress_option
@click.pass_context
def upload_dir(ctx: Any, catalog_path: str, pattern: str, no_progress: bool) -> None:
    """Re-sync the project's whole server folder."""
    from .cli_progress import PipelineProgressDisplay

    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    pipeline = _build_pipeline(ctx, catalog)

    async def run() -> UploadReport:
        if no_progress or out.quiet or out.json_output:
            return await pipeline.upload_full_directory(pattern)
        with PipelineProgressDisplay("Syncing") as display:
            return await pipeline.upload_full_directory(
                pattern, progress_callback=display.on_upload_progress
            )

    report = _run_command(ctx, pipeline, run())
    _save_catalog(ctx, catalog, catalog_path)
    _report_upload(out, report)
    if not report.success:
        ctx.exit(1)


@main.command()
@catalog_option
@click.argument("remote_path")
@click.pass_context
def delete(ctx: Any, catalog_path: str, remote_path: str) -> None:
    """Delete a remote file and reset the resources that used it.

    REMOTE_PATH: Object key relative to the bucket prefix
    """
    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    pipeline = _build_pipeline(ctx, catalog)
    result = _run_command(ctx, pipeline, pipeline.delete_remote_file(remote_path))
    _save_catalog(ctx, catalog, catalog_path)

    if out.json_output:
        out.output_json(
            {
                "deleted": result.has_deleted_paths,
                "reset": result.reset_count,
                "ledger_records": result.ledger_records_marked,
            }
        )
    elif result.has_deleted_paths:
        out.success(f"Deleted {remote_path}; reset {result.reset_count} resources")
    else:
        out.error(f"Could not delete {remote_path}")
    if not result.has_deleted_paths:
        ctx.exit(1)


@main.command()
@catalog_option
@click.pass_context
def refresh(ctx: Any, catalog_path: str) -> None:
    """Verify uploaded resources against the bucket listing."""
    out: OutputFormatter = ctx.obj["out"]
    catalog = _load_catalog(ctx, catalog_path)
    pipeline = _build_pipeline(ctx, catalog)
    result = _run_command(ctx, pipeline, pipeline.refresh_remote_listing())
    _save_catalog(ctx, catalog, catalog_path)

    if out.json_output:
        out.output_json(
            {
                "server_empty": result.server_was_empty,
                "verified": result.verified_count,
                "not_found": result.not_found_count,
                "reset": result.reset_count,
            }
        )
        return
    out.print_summary(
        "Server Sync",
        [
            ("Verified", str(result.verified_count)),
            ("Not found", str(result.not_found_count)),
            ("Reset", str(result.reset_count)),
        ],
    )


@main.command()
@click.option("--project", "-p", help="Only show records of this project")
@click.pass_context
def ledger(ctx: Any, project: Optional[str]) -> None:
    """Show the local upload ledger."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        upload_ledger = UploadLedger(config.ledger_path)
    except AssetSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    try:
        records = (
            upload_ledger.get_by_project(project) if project else upload_ledger.get_all()
        )
    finally:
        upload_ledger.close()

    if not records:
        out.info("Ledger is empty")
        if out.json_output:
            out.output_json([])
        return

    rows = [
        {
            "remote_path": r.remote_path,
            "status": r.status.value,
            "size": out.format_size(r.content_length),
            "uploaded_at": format_timestamp(r.uploaded_at),
            "sha1": r.content_hash[:12],
        }
        for r in records
    ]
    out.output_table(
        rows,
        ["remote_path", "status", "size", "uploaded_at", "sha1"],
        {
            "remote_path": "Remote path",
            "status": "Status",
            "size": "Size",
            "uploaded_at": "Uploaded",
            "sha1": "SHA-1",
        },
    )


if __name__ == "__main__":
    main()
