# Task board: tasks, calendar reconciliation, and the scheduling assistant
#
# Components:
#   schema.py         - Data model (Task, CalendarEvent, ChatSession, AIResponse, slots)
#   errors.py         - Error taxonomy (validation, not found, transient, upstream AI)
#   store.py          - SQLite persistence for tasks, chat sessions and AI responses
#   slots.py          - Working-hours free-slot finder
#   retry.py          - Async retry with exponential backoff
#   position_cache.py - TTL cache of unconfirmed calendar positions
#   reconciler.py     - Optimistic calendar drag/resize with revert on failure
#   board.py          - Kanban column moves and completion-window resolution
#   events.py         - Refresh signals and user notifications
#   client.py         - HTTP client and async gateway for the task API
#   suggestions.py    - Assistant prompts and suggestion parsing
#   assistant.py      - LLM client and scheduling assistant
#   config.py         - YAML configuration
