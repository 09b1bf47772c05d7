"""Agentic OCR Receipt Agents.

Three-stage pipeline for structured receipt data extraction:
  Stage 1 - Vendor Detector:  rule-based (text layer) or LLM vendor tagging
  Stage 2 - Parsers:          vendor-specialized parsers, generic parser
  Stage 3 - Fallbacks:        generic-enhanced parser, baseline OCR
  Orchestrator:               budget-aware pipeline controller (no LLM)
"""
