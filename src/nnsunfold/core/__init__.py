"""Core data structures and utilities."""

from nnsunfold.core.errors import (
	ConfigurationError,
	DimensionError,
	NumericalInstabilityError,
	UnfoldingError,
)
from nnsunfold.core.response import (
	ResponseModel,
	as_nonnegative_vector,
	as_vector,
	as_response_model,
	check_dimensions,
)

__all__ = [
	"ResponseModel",
	"as_nonnegative_vector",
	"as_vector",
	"as_response_model",
	"check_dimensions",
	# Errors
	"UnfoldingError",
	"ConfigurationError",
	"DimensionError",
	"NumericalInstabilityError",
]
