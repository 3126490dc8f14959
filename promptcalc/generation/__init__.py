"""PromptCalc generation stages.

Layout:
    execution_model.py  keyword-based form/expression selection
    classifier.py       prompt classifier (PromptScanDecision)
    artifact_output.py  output unwrapping, validation, manifest embed + hash
    postprocess.py      idempotent HTML safety rewrites
    ai_scan.py          AI code scan call and issue triage
    generator.py        ArtifactGenerator (one corrective round on Function constructors)
    scan_policy.py      enforce/warn/off arbiter
    pipeline.py         arbiter + classifier + deferred generator
    gate.py             generation enabled / API key gate
    redteam_dump.py     red-team collateral bundles
"""
