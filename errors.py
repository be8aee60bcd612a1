"""
Erros de domínio e tradução para respostas HTTP
"""

import logging
from flask import jsonify

logger = logging.getLogger(__name__)


class GestorError(Exception):
    """Base dos erros de domínio"""
    status_code = 500
    codigo = "erro_interno"

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


class DadosInvalidosError(GestorError):
    """Dados inválidos"""
    status_code = 422
    codigo = "dados_invalidos"


class NaoEncontradoError(GestorError):
    """Registro não encontrado"""
    status_code = 404
    codigo = "nao_encontrado"


class VendaNaoEncontradaError(NaoEncontradoError):
    """Venda não encontrada ou token inválido"""
    codigo = "venda_nao_encontrada"


class VendaJaProcessadaError(GestorError):
    """Venda já processada"""
    status_code = 409
    codigo = "venda_ja_processada"

    def __init__(self, message=None, status_atual=None):
        super().__init__(message)
        self.status_atual = status_atual


class ClienteEmUsoError(GestorError):
    """Cliente possui registros vinculados"""
    status_code = 409
    codigo = "cliente_em_uso"


class LimitePlanoExcedidoError(GestorError):
    """Limite do plano atingido"""
    status_code = 422
    codigo = "limite_plano"


class AcessoNegadoError(GestorError):
    """Acesso negado"""
    status_code = 403
    codigo = "acesso_negado"


def register_error_handlers(app):
    @app.errorhandler(GestorError)
    def gestor_error(e):
        corpo = {'message': e.message, 'error': e.codigo}
        status_atual = getattr(e, 'status_atual', None)
        if status_atual:
            corpo['status'] = status_atual
        if e.status_code >= 500:
            logger.error(f"Erro interno: {e.message}")
        return jsonify(corpo), e.status_code

    @app.errorhandler(400)
    def bad_request(e): return jsonify(message="Requisição inválida", error="bad_request"), 400

    @app.errorhandler(401)
    def unauthorized(e): return jsonify(message="Não autenticado", error="unauthorized"), 401

    @app.errorhandler(404)
    def not_found(e): return jsonify(message="Não encontrado", error="not_found"), 404

    @app.errorhandler(405)
    def method_not_allowed(e): return jsonify(message="Método não permitido", error="method_not_allowed"), 405

    @app.errorhandler(500)
    def server_error(e): return jsonify(message="Erro interno", error="server_error"), 500
