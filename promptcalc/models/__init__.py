"""PromptCalc models package.

Defines the shared data contracts returned to callers:

  - refusal.py:  RefusalCode, RefusalReason (policy refusals as values)
  - response.py: generate-response builders (ok / scan_block / scan_warn /
                 scan_skipped / error)
  - redteam.py:  RedTeamProfile normalisation and deterministic profile ids
"""
