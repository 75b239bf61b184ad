"""
HUMAN logging level -- Readable agent traceability.

Custom level between INFO (20) and WARNING (30). It does not indicate
severity: it marks high-level traceability so the user can follow what
the agent does without technical noise.

Hierarchy:
    debug  (10) -> stream chunks, full args, timing
    info   (20) -> system operations (config loaded, tool registered)
    human  (25) -> what the agent does: model call, tool use, result
    warn   (30) -> non-fatal problems
    error  (40) -> errors
"""

import logging

import structlog

HUMAN = 25
logging.addLevelName(HUMAN, "HUMAN")


def _human_method(self, message, *args, **kwargs):
    if self.isEnabledFor(HUMAN):
        self._log(HUMAN, message, args, **kwargs)


logging.Logger.human = _human_method

# structlog needs the name to render level 25
structlog.stdlib.LEVEL_TO_NAME[HUMAN] = "human"
