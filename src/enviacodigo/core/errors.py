"""Taxonomia de erros do núcleo de entrega e do ciclo de vida dos códigos."""
from __future__ import annotations


class DeliveryError(Exception):
    """Base de erros de entrega.

    ``retryable`` explícito vence a classificação por padrão de mensagem;
    ``None`` delega ao classificador.
    """
    code: str = "DELIVERY_ERROR"
    retryable: bool | None = None

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.status_code = status_code


class ConfigurationError(DeliveryError):
    """Credenciais ausentes ou inválidas. Nunca repetido."""
    code = "CONFIG_NOT_FOUND"
    retryable = False


class ValidationError(DeliveryError):
    """Destino malformado (telefone, e-mail) ou lote vazio."""
    code = "INVALID_DESTINATION"
    retryable = False


class TransientTransportError(DeliveryError):
    """Rede, 5xx, 408 ou 429: repetido conforme a política."""
    code = "TRANSIENT_ERROR"
    retryable = True


class OperationTimeoutError(TransientTransportError):
    """O timer venceu a operação."""
    code = "TIMEOUT"

    def __init__(self, operation_name: str, timeout_ms: int):
        super().__init__(f"{operation_name} timed out after {timeout_ms}ms")
        self.operation_name = operation_name
        self.timeout_ms = timeout_ms


class AuthorizationError(DeliveryError):
    """401/403 do provedor ou falha de login SMTP."""
    code = "AUTHORIZATION_ERROR"
    retryable = False


class ProviderRejectedError(DeliveryError):
    """Demais 4xx do provedor: requisição recusada, não adianta repetir."""
    code = "PROVIDER_REJECTED"
    retryable = False


class CircuitOpenError(DeliveryError):
    """Breaker aberto: serviço considerado fora, chamada nem foi tentada."""
    code = "CIRCUIT_OPEN"
    retryable = False

    def __init__(self, operation_name: str):
        super().__init__(f"Circuit breaker is open for {operation_name}. Try again later.")
        self.operation_name = operation_name


class RetryExhaustedError(DeliveryError):
    """Agregado: todas as tentativas falharam."""
    code = "RETRY_EXHAUSTED"
    retryable = False

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException | None):
        last = str(last_error) if last_error is not None else "unknown"
        super().__init__(f"{operation_name} failed after {attempts} attempts. Last error: {last}")
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error


class DecryptionError(Exception):
    """Falha genérica ao abrir um blob do cofre (dados adulterados ou chave errada)."""


class LifecycleError(Exception):
    """Base de erros de transição de status de códigos."""


class CodeNotFoundError(LifecycleError):
    pass


class OwnershipError(LifecycleError):
    """Código/sessão não pertence ao usuário chamador."""


class EmptySelectionError(LifecycleError):
    """Nenhum código foi selecionado para a operação."""


class InvalidTransitionError(LifecycleError):
    def __init__(self, current: str, target: str, message: str | None = None):
        super().__init__(message or f"Transição inválida: {current} -> {target}")
        self.current = current
        self.target = target


class ConcurrentUpdateError(LifecycleError):
    """O UPDATE condicional não casou com o status esperado (corrida)."""
