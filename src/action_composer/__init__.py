"""Action Composer.

Compose serverless actions into workflows:
- a combinator algebra to describe compositions
- a compiler from composition trees to flat state machines
- a conductor that runs the state machine one activation at a time, keeping
  session state in Redis
"""

__version__ = "0.4.0"

from action_composer.compiler.compiler import CompiledComposition, compile_composition
from action_composer.composition.combinators import Composer, Composition, Kind, composer
from action_composer.config import ComposerSettings

__all__ = [
    "__version__",
    "CompiledComposition",
    "Composer",
    "ComposerSettings",
    "Composition",
    "Kind",
    "compile_composition",
    "composer",
]
