from __future__ import annotations

from pipebricks.connectors.base import BaseDestinationWriter, BaseSourceReader
from pipebricks.core.logger import get_logger
from pipebricks.engine.mapping import apply_field_mappings
from pipebricks.engine.transformations import apply_transformations, compile_transformations
from pipebricks.models.pipeline import Pipeline
from pipebricks.models.run_log import DryRunResult

log = get_logger(__name__)


def build_dry_run(
    pipeline: Pipeline,
    reader: BaseSourceReader,
    writer: BaseDestinationWriter,
    sample_size: int = 10,
) -> DryRunResult:
    """Three-stage preview of what a run would produce, capped at ``sample_size`` per stage.

    The destination is only asked to echo the transformed sample; nothing is written.
    """
    sample_size = max(0, sample_size)
    compiled = compile_transformations(pipeline.transformations)

    source_preview = reader.dry_run_preview(pipeline.source, sample_size)[:sample_size]
    mapped_preview = apply_field_mappings(source_preview, pipeline.field_mappings)
    outcome = apply_transformations(mapped_preview, compiled)
    transformed_preview = writer.dry_run_preview(pipeline.destination, outcome.records, sample_size)[:sample_size]

    log.info(
        f"Dry run for pipeline '{pipeline.name}': source={len(source_preview)} "
        f"mapped={len(mapped_preview)} transformed={len(transformed_preview)} errors={len(outcome.errors)}"
    )
    return DryRunResult(
        source_preview=source_preview,
        mapped_preview=mapped_preview,
        transformed_preview=transformed_preview,
        errors=outcome.errors,
    )
