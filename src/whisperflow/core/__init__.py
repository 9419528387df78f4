"""
Core session services: provider registry, model context cache,
power mode resolution and the recording orchestrator.
"""
