#!/usr/bin/env python3
"""
Aplicação Web - Gestor Financeiro
API REST (Flask + JWT) para clientes, contas, lembretes de pagamento,
vendas parceladas e planos
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import wraps

from flask import Flask, request, jsonify, current_app
from flask.json.provider import DefaultJSONProvider
from flask_jwt_extended import JWTManager, create_access_token, jwt_required, get_jwt_identity, get_jwt
from werkzeug.security import check_password_hash

from errors import DadosInvalidosError, NaoEncontradoError, AcessoNegadoError, LimitePlanoExcedidoError, register_error_handlers
from installment_sales import SaleConfirmationWorkflow
from models import TIPOS_GATILHO, TIPOS_CONTA, STATUS_CONTA
from templates import TemplateManager
from utils import agora_br, arredondar_dinheiro, normalizar_horario, para_data

logger = logging.getLogger(__name__)


class GestorJSONProvider(DefaultJSONProvider):
    """Decimal como número e datas em ISO 8601"""

    @staticmethod
    def default(o):
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return DefaultJSONProvider.default(o)


def _servicos():
    return current_app.extensions['gestor']


def _db():
    return _servicos()['db']


def _usuario_atual():
    return int(get_jwt_identity())


def admin_required(fn):
    @wraps(fn)
    @jwt_required()
    def wrapper(*args, **kwargs):
        if not get_jwt().get('is_admin'):
            raise AcessoNegadoError("Apenas administradores")
        return fn(*args, **kwargs)
    return wrapper


def _corpo():
    return request.get_json(silent=True) or {}


def _ou_404(registro, mensagem):
    if not registro:
        raise NaoEncontradoError(mensagem)
    return registro


# ---------- Validações ----------
def _validar_cliente(dados, parcial=False):
    if not parcial or 'nome' in dados:
        if not (dados.get('nome') or '').strip():
            raise DadosInvalidosError("Nome do cliente obrigatório")
    if not parcial or 'whatsapp' in dados:
        if not (dados.get('whatsapp') or '').strip():
            raise DadosInvalidosError("WhatsApp do cliente obrigatório")
    return dados


def _validar_conta(dados, parcial=False):
    dados = dict(dados)
    if not parcial or 'descricao' in dados:
        if not (dados.get('descricao') or '').strip():
            raise DadosInvalidosError("Descrição obrigatória")
    if not parcial or 'valor' in dados:
        try:
            dados['valor'] = arredondar_dinheiro(dados.get('valor'))
        except (TypeError, ValueError):
            raise DadosInvalidosError("Valor inválido")
        if dados['valor'] <= 0:
            raise DadosInvalidosError("Valor deve ser positivo")
    if not parcial or 'vencimento' in dados:
        try:
            dados['vencimento'] = para_data(dados.get('vencimento'))
        except ValueError:
            dados['vencimento'] = None
        if dados['vencimento'] is None:
            raise DadosInvalidosError("Vencimento inválido")
    if 'tipo' in dados and dados['tipo'] not in TIPOS_CONTA:
        raise DadosInvalidosError(f"Tipo de conta inválido: {dados['tipo']}")
    if 'status' in dados and dados['status'] not in STATUS_CONTA:
        raise DadosInvalidosError(f"Status de conta inválido: {dados['status']}")
    if not parcial and not dados.get('cliente_id'):
        raise DadosInvalidosError("Cliente obrigatório")
    return dados


def _checar_cliente(dados, usuario_id):
    # cliente_id só pode apontar para um cliente do próprio usuário
    if 'cliente_id' in dados and not _db().buscar_cliente(dados['cliente_id'], usuario_id):
        raise NaoEncontradoError("Cliente não encontrado")


def _para_bool(valor, campo):
    if isinstance(valor, bool):
        return valor
    if isinstance(valor, str) and valor.strip().lower() in ('true', 'false'):
        return valor.strip().lower() == 'true'
    raise DadosInvalidosError(f"Campo '{campo}' deve ser true ou false")


def _validar_lembrete(dados, parcial=False):
    dados = dict(dados)
    if not parcial or 'nome' in dados:
        if not (dados.get('nome') or '').strip():
            raise DadosInvalidosError("Nome do lembrete obrigatório")
    if not parcial or 'tipo_gatilho' in dados:
        if dados.get('tipo_gatilho') not in TIPOS_GATILHO:
            raise DadosInvalidosError(f"Tipo de gatilho inválido: {dados.get('tipo_gatilho')}")
    if 'dias_gatilho' in dados or not parcial:
        try:
            dados['dias_gatilho'] = int(dados.get('dias_gatilho') or 0)
        except (TypeError, ValueError):
            raise DadosInvalidosError("Dias do gatilho inválido")
        if dados['dias_gatilho'] < 0:
            raise DadosInvalidosError("Dias do gatilho não pode ser negativo")
    if not parcial or 'horario_gatilho' in dados:
        try:
            dados['horario_gatilho'] = normalizar_horario(dados.get('horario_gatilho'))
        except ValueError as e:
            raise DadosInvalidosError(str(e))
    if not parcial or 'mensagem_template' in dados:
        erros = _servicos()['templates'].validar_template(dados.get('mensagem_template'))
        if erros:
            raise DadosInvalidosError("; ".join(erros))
    return dados


def _checar_limite(usuario_id, tipo, adicionais=1):
    limite = _db().verificar_limite_plano(usuario_id, tipo, adicionais)
    if not limite['pode_criar']:
        raise LimitePlanoExcedidoError(
            f"Limite do plano atingido ({limite['atual']}/{limite['maximo']})"
        )


def create_app(config=None, db=None, whatsapp_api=None, reminder_scheduler=None,
               billing_scheduler=None, relogio=agora_br):
    """Monta a aplicação com os serviços já construídos (ver wsgi.py)"""
    app = Flask(__name__)
    app.json = GestorJSONProvider(app)

    if config is not None:
        if config.auth.jwt_secret:
            app.config['JWT_SECRET_KEY'] = config.auth.jwt_secret
        app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(hours=config.auth.token_expira_horas)
    app.config.setdefault('JWT_SECRET_KEY', 'gestor-financeiro-dev-secret-troque-em-producao')

    JWTManager(app)
    register_error_handlers(app)

    app.extensions['gestor'] = {
        'db': db,
        'whatsapp': whatsapp_api,
        'templates': TemplateManager(),
        'lembretes': reminder_scheduler,
        'cobranca': billing_scheduler,
        'vendas': SaleConfirmationWorkflow(db, whatsapp_api, relogio=relogio),
        'relogio': relogio,
    }

    _registrar_rotas(app)
    return app


def _registrar_rotas(app):
    @app.get('/')
    def health_check():
        servicos = _servicos()
        lembretes = servicos['lembretes']
        cobranca = servicos['cobranca']
        return jsonify({
            'status': 'healthy',
            'service': 'Gestor Financeiro',
            'timestamp': servicos['relogio']().isoformat(),
            'schedulers': {
                'lembretes': bool(lembretes and lembretes.is_running()),
                'cobranca': bool(cobranca and cobranca.is_running()),
            },
            'version': '1.0.0'
        }), 200

    # ---------- Autenticação ----------
    @app.post('/api/login')
    def login():
        dados = _corpo()
        username = (dados.get('username') or dados.get('email') or '').strip()
        senha = dados.get('password') or ''
        if not username or not senha:
            raise DadosInvalidosError("Usuário e senha obrigatórios")

        usuario = _db().buscar_usuario_por_username(username)
        if not usuario or not check_password_hash(usuario['senha_hash'], senha):
            return jsonify(message="Credenciais inválidas", error="unauthorized"), 401

        token = create_access_token(
            identity=str(usuario['id']),
            additional_claims={'is_admin': bool(usuario.get('is_admin'))}
        )
        logger.info(f"Login do usuário {usuario['id']}")
        return jsonify(access_token=token, user={
            'id': usuario['id'], 'username': usuario['username'], 'is_admin': bool(usuario.get('is_admin'))
        }), 200

    @app.get('/api/me')
    @jwt_required()
    def me():
        return jsonify(_ou_404(_db().buscar_usuario_por_id(_usuario_atual()), "Usuário não encontrado"))

    # ---------- Clientes ----------
    @app.get('/api/clients')
    @jwt_required()
    def listar_clientes():
        return jsonify(_db().listar_clientes(_usuario_atual()))

    @app.post('/api/clients')
    @jwt_required()
    def criar_cliente():
        usuario_id = _usuario_atual()
        dados = _validar_cliente(_corpo())
        _checar_limite(usuario_id, 'max_clientes')
        return jsonify(_db().criar_cliente(usuario_id, dados)), 201

    @app.get('/api/clients/<int:cliente_id>')
    @jwt_required()
    def obter_cliente(cliente_id):
        return jsonify(_ou_404(_db().buscar_cliente(cliente_id, _usuario_atual()), "Cliente não encontrado"))

    @app.put('/api/clients/<int:cliente_id>')
    @jwt_required()
    def atualizar_cliente(cliente_id):
        dados = _validar_cliente(_corpo(), parcial=True)
        cliente = _db().atualizar_cliente(cliente_id, _usuario_atual(), dados)
        return jsonify(_ou_404(cliente, "Cliente não encontrado"))

    @app.delete('/api/clients/<int:cliente_id>')
    @jwt_required()
    def excluir_cliente(cliente_id):
        if not _db().excluir_cliente(cliente_id, _usuario_atual()):
            raise NaoEncontradoError("Cliente não encontrado")
        return '', 204

    # ---------- Contas a receber / pagar ----------
    def _rotas_conta(prefixo, tipo, nome):
        def listar():
            return jsonify(_db().listar_contas(tipo, _usuario_atual()))

        def criar():
            usuario_id = _usuario_atual()
            dados = _validar_conta(_corpo())
            _checar_cliente(dados, usuario_id)
            _checar_limite(usuario_id, 'max_transacoes')
            return jsonify(_db().criar_conta(tipo, usuario_id, dados)), 201

        def obter(conta_id):
            return jsonify(_ou_404(_db().buscar_conta(tipo, conta_id, _usuario_atual()), f"{nome} não encontrada"))

        def atualizar(conta_id):
            usuario_id = _usuario_atual()
            dados = _validar_conta(_corpo(), parcial=True)
            _checar_cliente(dados, usuario_id)
            conta = _db().atualizar_conta(tipo, conta_id, usuario_id, dados)
            return jsonify(_ou_404(conta, f"{nome} não encontrada"))

        def excluir(conta_id):
            if not _db().excluir_conta(tipo, conta_id, _usuario_atual()):
                raise NaoEncontradoError(f"{nome} não encontrada")
            return '', 204

        def pagar(conta_id):
            conta = _db().marcar_conta_paga(tipo, conta_id, _usuario_atual(), _servicos()['relogio']())
            return jsonify(_ou_404(conta, f"{nome} não encontrada"))

        app.add_url_rule(prefixo, f'listar_{tipo}', jwt_required()(listar), methods=['GET'])
        app.add_url_rule(prefixo, f'criar_{tipo}', jwt_required()(criar), methods=['POST'])
        app.add_url_rule(f'{prefixo}/<int:conta_id>', f'obter_{tipo}', jwt_required()(obter), methods=['GET'])
        app.add_url_rule(f'{prefixo}/<int:conta_id>', f'atualizar_{tipo}', jwt_required()(atualizar), methods=['PUT'])
        app.add_url_rule(f'{prefixo}/<int:conta_id>', f'excluir_{tipo}', jwt_required()(excluir), methods=['DELETE'])
        app.add_url_rule(f'{prefixo}/<int:conta_id>/pay', f'pagar_{tipo}', jwt_required()(pagar), methods=['POST'])

    _rotas_conta('/api/receivables', 'receber', 'Conta a receber')
    _rotas_conta('/api/payables', 'pagar', 'Conta a pagar')

    @app.get('/api/dashboard')
    @jwt_required()
    def dashboard():
        return jsonify(_db().obter_resumo(_usuario_atual(), _servicos()['relogio']().date()))

    # ---------- Lembretes de pagamento ----------
    @app.get('/api/payment-reminders')
    @jwt_required()
    def listar_lembretes():
        return jsonify(_db().listar_lembretes(_usuario_atual()))

    @app.post('/api/payment-reminders')
    @jwt_required()
    def criar_lembrete():
        dados = _validar_lembrete(_corpo())
        return jsonify(_db().criar_lembrete(_usuario_atual(), dados)), 201

    @app.get('/api/payment-reminders/variables')
    @jwt_required()
    def variaveis_lembrete():
        return jsonify(_servicos()['templates'].obter_variaveis_disponiveis())

    @app.get('/api/payment-reminders/<int:lembrete_id>')
    @jwt_required()
    def obter_lembrete(lembrete_id):
        return jsonify(_ou_404(_db().buscar_lembrete(lembrete_id, _usuario_atual()), "Lembrete não encontrado"))

    @app.put('/api/payment-reminders/<int:lembrete_id>')
    @jwt_required()
    def atualizar_lembrete(lembrete_id):
        dados = _validar_lembrete(_corpo(), parcial=True)
        lembrete = _db().atualizar_lembrete(lembrete_id, _usuario_atual(), dados)
        return jsonify(_ou_404(lembrete, "Lembrete não encontrado"))

    @app.delete('/api/payment-reminders/<int:lembrete_id>')
    @jwt_required()
    def excluir_lembrete(lembrete_id):
        if not _db().excluir_lembrete(lembrete_id, _usuario_atual()):
            raise NaoEncontradoError("Lembrete não encontrado")
        return '', 204

    @app.post('/api/payment-reminders/test')
    @jwt_required()
    def testar_lembretes():
        lembretes = _servicos()['lembretes']
        if lembretes is None:
            return jsonify(message="Agendador de lembretes indisponível", error="indisponivel"), 503
        resultado = lembretes.processar_lembretes_usuario(_usuario_atual())
        return jsonify(message="Processamento de lembretes executado", resultado=resultado.as_dict())

    @app.get('/api/reminder-logs')
    @jwt_required()
    def listar_logs():
        limite = request.args.get('limit', 100, type=int)
        return jsonify(_db().listar_logs_lembrete(_usuario_atual(), limite))

    # ---------- Vendas parceladas ----------
    @app.get('/api/installment-sales')
    @jwt_required()
    def listar_vendas():
        return jsonify(_db().listar_vendas_parceladas(_usuario_atual()))

    @app.post('/api/installment-sales')
    @jwt_required()
    def criar_venda():
        venda = _servicos()['vendas'].criar_venda(_usuario_atual(), _corpo())
        return jsonify(venda), 201

    @app.get('/api/installment-sales/<int:venda_id>')
    @jwt_required()
    def obter_venda(venda_id):
        return jsonify(_ou_404(_db().buscar_venda_parcelada(venda_id, _usuario_atual()), "Venda não encontrada"))

    @app.post('/api/installment-sales/<int:venda_id>/approve')
    @jwt_required()
    def revisar_venda(venda_id):
        dados = _corpo()
        if 'approved' not in dados:
            raise DadosInvalidosError("Campo 'approved' obrigatório")
        venda = _servicos()['vendas'].revisar(
            venda_id, _usuario_atual(), _para_bool(dados['approved'], 'approved'), dados.get('notes')
        )
        return jsonify(venda)

    @app.post('/api/installment-sales/<int:venda_id>/regenerate-token')
    @jwt_required()
    def regenerar_token(venda_id):
        return jsonify(_servicos()['vendas'].regenerar_token(venda_id, _usuario_atual()))

    @app.delete('/api/installment-sales/<int:venda_id>')
    @jwt_required()
    def excluir_venda(venda_id):
        if not _db().excluir_venda_parcelada(venda_id, _usuario_atual()):
            raise NaoEncontradoError("Venda não encontrada ou já aprovada")
        return '', 204

    # ---------- Confirmação pública (sem JWT) ----------
    @app.get('/api/confirm-sale/<token>')
    def obter_venda_publica(token):
        venda = _servicos()['vendas'].obter_venda_publica(token)
        return jsonify({
            'id': venda['id'],
            'descricao': venda['descricao'],
            'valor_total': venda['valor_total'],
            'quantidade_parcelas': venda['quantidade_parcelas'],
            'valor_parcela': venda['valor_parcela'],
            'primeiro_vencimento': venda['primeiro_vencimento'],
            'status': venda['status'],
            'cliente_nome': venda.get('cliente_nome'),
            'vendedor_nome': venda.get('vendedor_nome'),
        })

    @app.post('/api/confirm-sale/<token>')
    def confirmar_venda(token):
        dados = _corpo()
        venda = _servicos()['vendas'].confirmar_por_token(token, dados.get('documentPhotoUrl'))
        return jsonify(message="Venda confirmada com sucesso", id=venda['id'], status=venda['status'])

    # ---------- Planos ----------
    @app.get('/api/plans')
    def listar_planos():
        return jsonify(_db().listar_planos())

    @app.get('/api/plans/usage')
    @jwt_required()
    def uso_plano():
        usuario_id = _usuario_atual()
        return jsonify({
            'plano': _db().buscar_plano_ativo_usuario(usuario_id),
            'clientes': _db().verificar_limite_plano(usuario_id, 'max_clientes', 0),
            'transacoes': _db().verificar_limite_plano(usuario_id, 'max_transacoes', 0),
        })

    @app.post('/api/admin/billing/trigger')
    @admin_required
    def disparar_cobranca():
        cobranca = _servicos()['cobranca']
        if cobranca is None:
            return jsonify(message="Serviço de cobrança indisponível", error="indisponivel"), 503
        criadas = cobranca.disparar_cobranca_manual()
        return jsonify(message="Cobrança mensal executada", criadas=criadas)
