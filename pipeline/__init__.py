"""
Collaborators used by the schedulers.

This module provides:
- Folder scanning and batch intake
- Preview generation and contextual metadata extraction
- Annotation through the OpenAI Vision API
- Embedding annotation metadata into image files
"""

from pipeline.annotator import AnnotationResult, Annotator
from pipeline.file_scanner import FileScanner
from pipeline.intake import BatchIntake, parse_classification
from pipeline.metadata_extractor import MetadataExtractor
from pipeline.metadata_writer import MetadataWriter
from pipeline.preparer import PhotoPreparer
from pipeline.thumbnail_generator import ThumbnailGenerator

__all__ = [
    "AnnotationResult",
    "Annotator",
    "FileScanner",
    "BatchIntake",
    "parse_classification",
    "MetadataExtractor",
    "MetadataWriter",
    "PhotoPreparer",
    "ThumbnailGenerator",
]
