"""Packaging pipeline.

This module ties the pieces together:

- Validate inputs and decide the output kind. Platform checks and compiled
  stub selection happen before anything is written.
- Copy the input into a fresh build directory, install requirements, run the
  prepare command and embed a runtime binary if asked.
- Compose the artifact (stub + archive + trailer, shell script + archive, or
  a macOS bundle) and publish it atomically.
- Remove the build directory unless asked to keep it.
"""

from dataclasses import dataclass
import logging
import pathlib
import shutil
import time

from stubpack.archive import ArchiveStats
from stubpack.command import PLACEHOLDER, CommandTemplate
from stubpack.composer import check_overwrite, compose_bundle, compose_compiled, compose_script
from stubpack.errors import InputError
from stubpack.platforms import HostPlatform
from stubpack.staging import (
    CopyStats,
    copy_input,
    create_build_directory,
    include_runtime as embed_runtime,
    install_requirements,
    run_prepare_command,
)
from stubpack.stubs import OutputKind, check_output_kind, select_compiled_stub
from stubpack.trailer import Trailer, generate_identifier, validate_identifier


@dataclass(frozen=True, slots=True)
class PackageResult:
    """Outcome of a packaging run.

    :ivar output: Artifact path.
    :ivar kind: Output kind that was produced.
    :ivar identifier: Extraction-cache identifier (``None`` for bundles).
    :ivar build_directory: Build directory, if it was kept.
    """

    output: pathlib.Path
    kind: OutputKind
    identifier: str | None
    build_directory: pathlib.Path | None


def package(
    *,
    input_dir: pathlib.Path,
    output: pathlib.Path,
    command: list[str],
    identifier: str | None = None,
    uncompression_message: str | None = None,
    force: bool = False,
    exclude: tuple[str, ...] = (),
    requirements: pathlib.Path | None = None,
    prepare_command: str | None = None,
    include_runtime: pathlib.Path | None = None,
    stub: pathlib.Path | None = None,
    stubs_dir: pathlib.Path | None = None,
    keep_build_directory: bool = False,
    compresslevel: int = 9,
    host: HostPlatform | None = None,
    logger: logging.Logger | None = None,
) -> PackageResult:
    """Package ``input_dir`` into a self-extracting artifact at ``output``.

    :param input_dir: Application directory.
    :param output: Output path; its suffix selects the output kind.
    :param command: Command template, may reference ``{{app}}``.
    :param identifier: Cache identifier; generated when omitted.
    :param uncompression_message: Notice printed the first time the artifact extracts.
    :param force: Replace an existing output.
    :param exclude: Glob patterns of input paths to leave out.
    :param requirements: Optional requirements.txt installed into ``deps/``.
    :param prepare_command: Optional shell command run in the build directory.
    :param include_runtime: Optional binary copied into ``bin/``.
    :param stub: Explicit compiled stub.
    :param stubs_dir: Directory of per-platform compiled stubs.
    :param keep_build_directory: Keep the build directory for inspection.
    :param compresslevel: Gzip compression level (0-9).
    :param host: Build host (detected when omitted).
    :param logger: Optional logger for progress output.
    :returns: Packaging result.
    :raises InputError: For invalid inputs or an existing output without ``force``.
    :raises PlatformUnsupportedError: If the output kind cannot be built here.
    :raises ExternalCommandError: If pip or the prepare command fails.
    :raises ArchiveError: If the archive cannot be written.
    """

    if logger is None:
        logger = logging.getLogger("stubpack")
    if host is None:
        host = HostPlatform.detect()

    if input_dir.exists() is False or input_dir.is_dir() is False:
        raise InputError(f"The path to package is not a directory: {input_dir}")
    if compresslevel < 0 or compresslevel > 9:
        raise InputError(f"Invalid compresslevel={compresslevel}; expected 0-9.")

    template: CommandTemplate = CommandTemplate.parse(command)
    if template.uses_placeholder is False:
        logger.warning(
            f"stubpack: the command never references {PLACEHOLDER}; "
            "it will not know where the packaged files were extracted"
        )
    kind: OutputKind = OutputKind.from_output(output)
    check_output_kind(kind, output, host)

    stub_path: pathlib.Path | None = None
    if kind is OutputKind.COMPILED:
        stub_path = select_compiled_stub(host, stub=stub, stubs_dir=stubs_dir)

    resolved_identifier: str | None = None
    if kind is not OutputKind.BUNDLE:
        if identifier is not None:
            resolved_identifier = validate_identifier(identifier)
        else:
            resolved_identifier = generate_identifier(output)

    check_overwrite(output, force=force)

    t_total0: float = time.perf_counter()
    logger.info(f"stubpack: input={input_dir}")
    logger.info(f"stubpack: output={output} ({kind.value})")
    if resolved_identifier is not None:
        logger.info(f"stubpack: identifier={resolved_identifier}")
    if stub_path is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"stubpack: stub={stub_path}")

    build_dir: pathlib.Path = create_build_directory()
    logger.info(f"stubpack: build_directory={build_dir}")
    try:
        t_stage0: float = time.perf_counter()
        stats: CopyStats = copy_input(src=input_dir, dst=build_dir, exclude=exclude, output=output)
        t_stage1: float = time.perf_counter()
        logger.info(
            f"stubpack: staged input ({stats.files_copied} files, "
            f"{stats.bytes_copied / (1024 * 1024):.1f} MiB) in {t_stage1 - t_stage0:.2f}s"
        )

        if requirements is not None:
            logger.info(f"stubpack: installing requirements from {requirements}")
            install_requirements(build_dir=build_dir, requirements=requirements, logger=logger)
        if prepare_command is not None:
            logger.info(f"stubpack: running prepare command: {prepare_command}")
            run_prepare_command(build_dir=build_dir, command=prepare_command, logger=logger)
        if include_runtime is not None:
            copied: pathlib.Path = embed_runtime(build_dir=build_dir, runtime=include_runtime)
            logger.info(f"stubpack: embedded runtime {copied.relative_to(build_dir).as_posix()}")

        t_write0: float = time.perf_counter()
        archive_stats: ArchiveStats | None = None
        if kind is OutputKind.BUNDLE:
            compose_bundle(output=output, build_dir=build_dir, command=template, force=force)
        elif kind is OutputKind.SCRIPT:
            archive_stats = compose_script(
                output=output,
                build_dir=build_dir,
                identifier=resolved_identifier,  # type: ignore[arg-type]
                command=template,
                uncompression_message=uncompression_message,
                force=force,
                compresslevel=compresslevel,
            )
        else:
            archive_stats = compose_compiled(
                output=output,
                stub=stub_path,  # type: ignore[arg-type]
                build_dir=build_dir,
                trailer=Trailer(
                    identifier=resolved_identifier,  # type: ignore[arg-type]
                    command=template.raw,
                    uncompression_message=uncompression_message,
                ),
                force=force,
                compresslevel=compresslevel,
            )
        t_write1: float = time.perf_counter()
        if archive_stats is not None:
            logger.info(
                f"stubpack: archived {archive_stats.entries} entries "
                f"({archive_stats.bytes_written / (1024 * 1024):.1f} MiB compressed)"
            )
        logger.info(f"stubpack: wrote {output} in {t_write1 - t_write0:.2f}s")
    finally:
        if keep_build_directory is False:
            shutil.rmtree(build_dir, ignore_errors=True)

    t_total1: float = time.perf_counter()
    logger.info(f"stubpack: done in {t_total1 - t_total0:.2f}s")

    return PackageResult(
        output=output,
        kind=kind,
        identifier=resolved_identifier,
        build_directory=build_dir if keep_build_directory is True else None,
    )
