"""Pipeline orchestrator for document processing."""

from etnopapers.pipeline.orchestrator import DocumentResult, PipelineOrchestrator

__all__ = ["DocumentResult", "PipelineOrchestrator"]
