"""
Pipeline module: configuration, logging, artifacts and output routing.

The executor and orchestrator import plugins and strategies, so they are
imported from their own modules (`rowpipe.pipeline.executor`,
`rowpipe.pipeline.orchestrator`) rather than re-exported here.
"""
from .config import (
    DEFAULT_MODEL,
    Defaults,
    GlobalsConfig,
    Limits,
    PipelineConfig,
    load_pipeline_config,
    parse_pipeline_config,
)
from .logger import PipelineLogger
from .artifacts import ArtifactEvent, FileSystemArtifactWriter, MemoryArtifactWriter
from .output import OutputRouter, resolve_output_strategy

__all__ = [
    'DEFAULT_MODEL',
    'Defaults',
    'GlobalsConfig',
    'Limits',
    'PipelineConfig',
    'load_pipeline_config',
    'parse_pipeline_config',
    'PipelineLogger',
    'ArtifactEvent',
    'FileSystemArtifactWriter',
    'MemoryArtifactWriter',
    'OutputRouter',
    'resolve_output_strategy',
]
