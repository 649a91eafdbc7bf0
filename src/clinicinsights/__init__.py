"""
Clinic-Insights: AI pipeline execution engine

Runs versioned, cached and audited LLM analysis pipelines (safety, billing,
treatment progress, clinical notes) concurrently against a clinical session.
"""

__version__ = "0.1.0"
__author__ = "Clinic-AI Team"
__description__ = "AI pipeline execution engine for clinical session insights"
