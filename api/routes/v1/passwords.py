"""
api/routes/v1/passwords.py -- Password helper endpoints used by the account forms.

  POST /api/v1/passwords/generate  -- random password with every character class
  POST /api/v1/passwords/strength  -- weak / medium / strong

Neither endpoint stores or logs the password.
"""

from fastapi import APIRouter, Depends

from api.models import GeneratePasswordRequest, GeneratePasswordResponse, StrengthRequest, StrengthResponse
from auth.dependencies import require_allowed
from core.passwords import analyze_strength, generate_password

router = APIRouter(dependencies=[Depends(require_allowed)])


@router.post("/passwords/generate", response_model=GeneratePasswordResponse)
def generate(body: GeneratePasswordRequest) -> GeneratePasswordResponse:
    password = generate_password(body.length)
    return GeneratePasswordResponse(password=password, strength=analyze_strength(password).value)


@router.post("/passwords/strength", response_model=StrengthResponse)
def strength(body: StrengthRequest) -> StrengthResponse:
    return StrengthResponse(strength=analyze_strength(body.password).value)
