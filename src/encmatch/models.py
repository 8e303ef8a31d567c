"""Plaintext attribute models validated on the client before encryption."""

from enum import IntEnum
from typing import Union

import pydantic

from encmatch.predicate import WILDCARD_GENDER, WILDCARD_REGION

INTERESTS_MASK_MAX = 0xFFFF


class Gender(IntEnum):
    UNKNOWN = 0
    MALE = 1
    FEMALE = 2
    OTHER = 3


class ProfileAttributes(pydantic.BaseModel):
    """single source of truth for profile attribute domains"""
    age: int = pydantic.Field(ge=1, le=120)
    gender: Gender
    interests: int = pydantic.Field(ge=0, le=INTERESTS_MASK_MAX)
    region: int = pydantic.Field(ge=0, lt=WILDCARD_REGION)


class PreferenceAttributes(pydantic.BaseModel):
    """preference criteria; None for gender or region means "any" """
    min_age: int = pydantic.Field(ge=1, le=120)
    max_age: int = pydantic.Field(ge=1, le=120)
    desired_gender: Union[Gender, None] = None
    interests_mask: int = pydantic.Field(ge=0, le=INTERESTS_MASK_MAX)
    region: Union[int, None] = pydantic.Field(default=None, ge=0, lt=WILDCARD_REGION)

    @pydantic.model_validator(mode="after")
    def _check_age_bounds(self):
        if self.min_age > self.max_age:
            raise ValueError("min_age must not exceed max_age")
        return self

    @property
    def desired_gender_code(self) -> int:
        return WILDCARD_GENDER if self.desired_gender is None else int(self.desired_gender)

    @property
    def region_code(self) -> int:
        return WILDCARD_REGION if self.region is None else self.region
