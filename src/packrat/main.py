# packrat/main.py
import functools
from pathlib import Path
from typing import Optional, Tuple

import attrs
import click

from . import config, log_manager
from .errors import AbortError, PackratError
from .safe_io import InteractiveRetryPolicy, RetryPolicy, SafeIO
from .scanner import PathFilter


def handle_errors(func):
    """Turns packrat and file system errors into a red message and an exit code (2 for aborts, 1 otherwise)."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AbortError as e:
            click.echo(click.style(str(e), fg="red"), err=True)
            raise SystemExit(2)
        except (PackratError, OSError) as e:
            click.echo(click.style(f"Error: {e}", fg="red"), err=True)
            raise SystemExit(1)
    return wrapper


def confirm_prompt(action: str, target: str) -> bool:
    return click.confirm(f"{action.capitalize()} '{target}'?", default=False)


def what_if(action: str, target: str) -> bool:
    """A gate that only reports what would happen."""
    click.echo(f"What if: {action} '{target}'")
    return False


def build_gate(confirm: bool, dry_run: bool = False):
    if dry_run:
        return what_if
    return confirm_prompt if confirm else None


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False, path_type=Path), help='Path to a packrat.toml file.')
@click.option('--interactive', is_flag=True, help='Ask whether to retry, skip or abort when a file stays locked.')
@click.option('--confirm', is_flag=True, help='Ask before every destructive action.')
@click.option('--no-progress', is_flag=True, help='Do not show progress bars.')
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], interactive: bool, confirm: bool, no_progress: bool):
    """Incremental backup, restore and one-way sync of directory trees."""
    app_config = config.load_config(config_path)
    if no_progress:
        app_config = attrs.evolve(app_config, show_progress=False)
    log_manager.setup_logging(app_config.log_file, app_config.log_level)

    policy_class = InteractiveRetryPolicy if interactive else RetryPolicy
    ctx.obj = {
        "config": app_config,
        "safe_io": SafeIO(policy_class(app_config.retry_attempts, app_config.retry_delay)),
        "confirm": confirm,
    }


@cli.command(name="backup")
@click.argument('source', type=click.Path(file_okay=False, path_type=Path))
@click.argument('target', type=click.Path(file_okay=False, path_type=Path))
@click.option('--shadow-index', type=click.Path(dir_okay=False, path_type=Path), help='Local copy of the index; deletions go to the removal list.')
@click.option('--force', is_flag=True, help='Re-pack every file, changed or not.')
@click.option('--size-threshold', type=int, help='Files of at least this many bytes get their own container.')
@click.option('--exclude', 'excludes', multiple=True, help='Path pattern to exclude. Can be used multiple times.')
@click.pass_obj
@handle_errors
def backup(obj: dict, source: Path, target: Path, shadow_index: Optional[Path], force: bool, size_threshold: Optional[int], excludes: Tuple[str, ...]):
    """
    Backs up SOURCE incrementally into the archive directory TARGET.

    Only files whose length, attributes or modification time changed since the
    last run are written. Small files are bundled into one zip archive per run,
    large ones get a container of their own.
    """
    from .backup import BackupEngine

    app_config = obj["config"]
    if size_threshold is not None:
        app_config = attrs.evolve(app_config, size_threshold=size_threshold)
    engine = BackupEngine(
        source, target,
        shadow_index=shadow_index,
        force=force,
        excludes=excludes,
        app_config=app_config,
        safe_io=obj["safe_io"],
        confirm=build_gate(obj["confirm"]),
    )
    engine.run()


@cli.command(name="restore")
@click.argument('source', type=click.Path(file_okay=False, path_type=Path))
@click.argument('target', type=click.Path(file_okay=False, path_type=Path))
@click.option('--include', 'includes', multiple=True, help='Only restore paths matching this pattern. Can be used multiple times.')
@click.option('--overwrite', is_flag=True, help='Replace files that already exist in TARGET.')
@click.pass_obj
@handle_errors
def restore(obj: dict, source: Path, target: Path, includes: Tuple[str, ...], overwrite: bool):
    """Restores the backup in SOURCE into the directory TARGET."""
    from .restore import RestoreEngine

    engine = RestoreEngine(
        source, target,
        include=includes,
        overwrite=overwrite,
        app_config=obj["config"],
        safe_io=obj["safe_io"],
        confirm=build_gate(obj["confirm"]),
    )
    engine.run()


@cli.command(name="sync")
@click.argument('source', type=click.Path(file_okay=False, path_type=Path))
@click.argument('target', type=click.Path(file_okay=False, path_type=Path))
@click.option('--exclude', 'excludes', multiple=True, help='Path pattern to exclude. Can be used multiple times.')
@click.option('--what-if', is_flag=True, help='Only report what would be copied or deleted.')
@click.pass_obj
@handle_errors
def sync(obj: dict, source: Path, target: Path, excludes: Tuple[str, ...], what_if: bool):
    """
    Mirrors SOURCE onto TARGET.

    Changed files are copied, files missing from SOURCE are deleted from
    TARGET. Press Ctrl-C to stop; queued copies are finished first.
    """
    from .sync import SyncPipeline

    pipeline = SyncPipeline(
        source, target,
        excludes=excludes,
        app_config=obj["config"],
        safe_io=obj["safe_io"],
        confirm=build_gate(obj["confirm"], what_if),
    )
    result = pipeline.run()
    if result.counters.failed:
        click.echo(click.style(f"{result.counters.failed} items could not be synced, see the log.", fg="yellow"), err=True)


@cli.command(name="clean")
@click.argument('directory', type=click.Path(file_okay=False, path_type=Path))
@click.option('--age-days', type=float, help='Delete files not written or read for this many days.')
@click.option('--exclude', 'excludes', multiple=True, help='Path pattern to keep. Can be used multiple times.')
@click.option('--what-if', is_flag=True, help='Only report what would be deleted.')
@click.pass_obj
@handle_errors
def clean(obj: dict, directory: Path, age_days: Optional[float], excludes: Tuple[str, ...], what_if: bool):
    """Deletes out-aged files from DIRECTORY, then the directories left empty."""
    from .cleaner import clean_directory

    app_config = obj["config"]
    result = clean_directory(
        directory,
        age_days if age_days is not None else app_config.clean_age_days,
        excludes=PathFilter(list(app_config.excludes) + list(excludes)),
        safe_io=obj["safe_io"],
        confirm=build_gate(obj["confirm"], what_if),
    )
    click.echo(
        f"Clean complete: {result.deleted_files} files and {result.deleted_directories} directories deleted, "
        f"{result.failed} failed."
    )


@cli.command(name="list-index")
@click.argument('location', type=click.Path(exists=True, path_type=Path))
@click.option('--summary', is_flag=True, help='Group the entries by archive.')
@click.pass_obj
@handle_errors
def list_index(obj: dict, location: Path, summary: bool):
    """Lists the entries of an index file, or of the index in a backup directory."""
    from .file_index import FileIndex
    from .reporter import Reporter

    if location.is_dir():
        location = location / obj["config"].index_name
    index = FileIndex.from_file(location, obj["safe_io"])
    reporter = Reporter()
    if summary:
        reporter.archive_summary(index)
    else:
        reporter.list_index(index)


@cli.command(name="write-index")
@click.argument('directory', type=click.Path(file_okay=False, path_type=Path))
@click.argument('output', type=click.Path(dir_okay=False, path_type=Path))
@click.option('--exclude', 'excludes', multiple=True, help='Path pattern to exclude. Can be used multiple times.')
@click.pass_obj
@handle_errors
def write_index(obj: dict, directory: Path, output: Path, excludes: Tuple[str, ...]):
    """Indexes DIRECTORY without archiving anything and writes the index to OUTPUT."""
    from .file_index import build_index

    index = build_index(directory, PathFilter(list(obj["config"].excludes) + list(excludes)))
    index.save(output, obj["safe_io"])
    click.echo(f"Wrote {len(index)} entries to '{output}'.")


@cli.command(name="list-dir")
@click.argument('directory', type=click.Path(file_okay=False, path_type=Path))
@click.option('--exclude', 'excludes', multiple=True, help='Path pattern to exclude. Can be used multiple times.')
@click.pass_obj
@handle_errors
def list_dir(obj: dict, directory: Path, excludes: Tuple[str, ...]):
    """Lists the files of DIRECTORY a backup would see."""
    from .reporter import Reporter

    Reporter().list_directory(directory, PathFilter(list(obj["config"].excludes) + list(excludes)))


@cli.command(name="init-config")
@click.argument('path', type=click.Path(dir_okay=False, path_type=Path), default=config.CONFIG_FILE_NAME)
@click.option('--force', is_flag=True, help='Overwrite an existing file.')
def init_config(path: Path, force: bool):
    """Writes a packrat.toml with the default settings."""
    if path.exists() and not force:
        click.echo(click.style(f"'{path}' already exists. Use --force to overwrite it.", fg="yellow"), err=True)
        raise SystemExit(1)
    config.save_config_to_path(config.Config(), path)
    click.echo(f"Wrote default configuration to '{path}'.")


if __name__ == "__main__":
    cli()
