"""Task orchestration engine for persona-driven CLI agent execution.

One process, one SQLite database, one task at a time. Each tick of the
scheduler picks the highest priority assigned backlog task, runs it through an
external CLI agent as the assigned persona, and routes the result:

- research work becomes a stored report and the task is done;
- pipeline tasks move to their next stage persona;
- everything else passes through a bounded AI review loop before a human sees it.

Failures go back to the backlog with a classified comment. The loop is
restartable: all state lives in the database.
"""
