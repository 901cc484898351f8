"""
Staged build pipeline: recipe model, stage executors, orchestration.
"""
