"""LLM agent layer.

- :mod:`~ledgerbot.agent.context`: thread history and addressing
- :mod:`~ledgerbot.agent.resolver`: one model call → reply or invocations
- :mod:`~ledgerbot.agent.executor`: apply invocations, aggregate one reply
- :mod:`~ledgerbot.agent.orchestrator`: the whole turn

Components are constructed explicitly by :func:`ledgerbot.bot.run_bot`.
"""
