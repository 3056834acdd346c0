"""
Job scheduling core shared by the supervisor and its worker processes.

- models: ScheduledJob table implementing the scheduling contract
- schedulable: the contract itself and job class loading/validation
- handlers: named callables executed inside worker processes
- processes: spawning and signalling worker processes
- config: environment-driven supervisor configuration
"""
