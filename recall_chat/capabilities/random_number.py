"""Random number capability."""

import random
from typing import Any

from pydantic import BaseModel, Field, model_validator

from recall_chat.capabilities.registry import Capability, CapabilityContext
from recall_chat.logging import get_logger

log = get_logger(__name__)


class RandomNumberInput(BaseModel):
    min: int = Field(description="Minimum value (inclusive)")
    max: int = Field(description="Maximum value (inclusive)")

    @model_validator(mode="after")
    def _check_range(self) -> "RandomNumberInput":
        if self.min > self.max:
            raise ValueError("min must not be greater than max")
        return self


class RandomNumberCapability(Capability):
    """Generate a random integer in a closed range."""

    name = "generate_random_number"
    description = "Generate a random number between a minimum and maximum value"
    input_model = RandomNumberInput

    async def execute(self, args: RandomNumberInput, context: CapabilityContext) -> dict[str, Any]:
        number = random.randint(args.min, args.max)
        log.debug("Random number generated", user=context.user.display_name or context.user.id)
        return {
            "number": number,
            "range": {"min": args.min, "max": args.max},
            "generatedFor": context.user.display_name,
        }
