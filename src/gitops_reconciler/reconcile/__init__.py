# ABOUTME: Reconciliation components package
# ABOUTME: Tracker, renderer, observer, diff, sync engine, and health evaluator

"""
Reconciliation pipeline:

    tracker -> renderer -> diff <- observer
                            |
                          sync -> runtime
                            ^
                          health
"""
