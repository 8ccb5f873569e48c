# ============================================================================
# ORCHESTRATOR MODULE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Rule engine and run dispatch
# PURPOSE: Evaluate rules, render templates, admit and supervise runs
# CREATED: 18 OCT 2026
# ============================================================================
"""
Orchestrator Module

- engine: rule evaluator, template renderer, JSON filter (pure components)
- dispatcher: bounded run admission, one task actor per run

Usage:
    from orchestrator.dispatcher import Dispatcher

    dispatcher = Dispatcher(store, guard, outbound)
    await dispatcher.start()
    record = await dispatcher.submit(RunRequest(job_id="charge", payload={...}))
"""
