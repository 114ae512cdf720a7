"""Funnel analytics engine: session reconstruction, step/cohort/segment analysis, metric materialization."""
