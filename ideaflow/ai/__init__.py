"""Language-model stages, error taxonomy and the pipeline orchestrator."""
