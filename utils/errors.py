"""
Error taxonomy shared by routers and services.

Every class is an HTTPException so FastAPI can propagate it from any depth;
main.py renders them as ``{"error": message}`` (plus ``details`` when present).
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class AppError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Erro interno do servidor"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[List[Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.default_message
        self.details = details
        super().__init__(status_code=self.status_code, detail=self.message, headers=headers)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationRequired(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Não autorizado"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Não encontrado"


class ValidationFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Dados inválidos"


class CapacityExceeded(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Limite atingido"


class FeatureNotAvailable(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Recurso disponível apenas no plano Pro"


class CaptchaFailed(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Verificação anti-spam falhou. Por favor, tente novamente."


class SignatureInvalid(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid signature"


class InternalFailure(AppError):
    pass


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Muitas requisições. Aguarde um momento."

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, headers={"Retry-After": str(self.retry_after)})
