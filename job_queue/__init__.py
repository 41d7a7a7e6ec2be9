"""
Job Queue — admits inbound messages as prioritized, retryable jobs.

- JobScheduler maps urgent/high/normal/low onto numeric priorities
- Backends: Redis sorted sets (production), in-process priority list (dev),
  or inline synchronous execution (fallback), chosen once at startup
- Lifecycle events (completed / failed / retrying / progress) go to
  JobEventListener observers
"""
