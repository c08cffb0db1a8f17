"""
Generation strategy contract.
=============================
A strategy turns one fully prepared request into a canonical GenerationResult.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..domain import ContentPart, GenerationResult, Message, StepConfig
from ..interfaces import IArtifactWriter
from ..llm import LLMClientFactory
from ..pipeline.commands import CommandRunner
from ..pipeline.logger import PipelineLogger


@dataclass
class GenerationRequest:
    step: StepConfig
    step_index: int
    row_index: int
    context: Dict[str, Any]
    system_parts: List[ContentPart]
    user_parts: List[ContentPart]
    history: List[Message] = field(default_factory=list)
    followups: List[Message] = field(default_factory=list)
    schema: Optional[Dict[str, Any]] = None
    output_base: str = ""
    output_extension: Optional[str] = None
    tmp_dir: str = ".tmp"
    cache_salt: str = ""
    skip_commands: bool = False


@dataclass
class GenerationServices:
    clients: LLMClientFactory
    artifacts: Optional[IArtifactWriter]
    commands: CommandRunner
    logger: PipelineLogger


class IGenerationStrategy(ABC):

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Produce the canonical result for one step of one row.

        Args:
            request: Rendered prompt content, history and step settings

        Returns:
            GenerationResult whose history message feeds later steps
        """
        pass
