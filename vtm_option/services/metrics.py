from prometheus_client import Counter, Histogram

job_runs_counter = Counter("vtm_job_runs_total", "Scheduler job invocations", ["job", "outcome"])
job_duration = Histogram("vtm_job_duration_seconds", "Scheduler job duration seconds", ["job"])
signals_counter = Counter("vtm_signals_processed_total", "Signals retired by the pipeline")
signals_rejected_counter = Counter("vtm_signals_rejected_total", "Signals quarantined as untranslatable")
orders_counter = Counter("vtm_orders_placed_total", "Orders acknowledged by the broker")
order_failures_counter = Counter("vtm_order_failures_total", "Order placements abandoned on broker failure")
settlements_counter = Counter("vtm_contracts_settled_total", "Trades moved to a terminal status", ["result"])
