import itertools
from datetime import datetime

import pytest

from errors import ClienteEmUsoError
from models import VENDA_PENDENTE, VENDA_CONFIRMADA, VENDA_APROVADA, VENDA_REJEITADA
from utils import TIMEZONE_BR


def horario_br(ano, mes, dia, hora=9, minuto=0):
    return TIMEZONE_BR.localize(datetime(ano, mes, dia, hora, minuto))


class FakeDB:
    """Armazenamento em memória com a mesma interface usada pelos serviços"""

    def __init__(self):
        self._ids = itertools.count(1)
        self.usuarios = {}
        self.clientes = {}
        self.contas_receber = {}
        self.contas_pagar = {}
        self.lembretes = {}
        self.logs = []
        self.vendas = {}
        self.planos = []
        self.limite = {'pode_criar': True, 'atual': 0, 'maximo': -1}
        self.cobrancas_geradas = []
        self.falhar_listar_usuarios = False
        self.falhar_usuarios = set()

    # ---------- Preparação ----------
    def add_usuario(self, **dados):
        usuario = {'id': next(self._ids), 'username': 'loja', 'is_admin': False, **dados}
        self.usuarios[usuario['id']] = usuario
        return usuario

    def add_cliente(self, usuario_id, nome='Maria Silva', whatsapp='11987654321'):
        cliente = {'id': next(self._ids), 'usuario_id': usuario_id, 'nome': nome, 'whatsapp': whatsapp}
        self.clientes[cliente['id']] = cliente
        return cliente

    def add_conta_receber(self, usuario_id, cliente, valor, vencimento, descricao='Serviço', status='pending'):
        conta = {
            'id': next(self._ids), 'usuario_id': usuario_id, 'cliente_id': cliente['id'],
            'descricao': descricao, 'valor': valor, 'vencimento': vencimento, 'status': status,
            'cliente_nome': cliente['nome'], 'cliente_whatsapp': cliente['whatsapp'],
        }
        self.contas_receber[conta['id']] = conta
        return conta

    def add_lembrete(self, usuario_id, tipo_gatilho, dias_gatilho=0, horario_gatilho='09:00',
                     mensagem_template='Olá {cliente}, {descricao} de {valor} vence em {vencimento}', ativo=True):
        lembrete = {
            'id': next(self._ids), 'usuario_id': usuario_id, 'nome': 'Lembrete',
            'tipo_gatilho': tipo_gatilho, 'dias_gatilho': dias_gatilho, 'horario_gatilho': horario_gatilho,
            'mensagem_template': mensagem_template, 'ativo': ativo,
        }
        self.lembretes[lembrete['id']] = lembrete
        return lembrete

    # ---------- Usuários ----------
    def listar_usuarios(self):
        if self.falhar_listar_usuarios:
            raise RuntimeError("banco indisponível")
        return list(self.usuarios.values())

    def buscar_usuario_por_id(self, usuario_id):
        return self.usuarios.get(usuario_id)

    def buscar_usuario_por_username(self, username):
        for usuario in self.usuarios.values():
            if username in (usuario.get('username'), usuario.get('email')):
                return usuario
        return None

    # ---------- Clientes ----------
    def listar_clientes(self, usuario_id):
        return [c for c in self.clientes.values() if c['usuario_id'] == usuario_id]

    def buscar_cliente(self, cliente_id, usuario_id):
        cliente = self.clientes.get(cliente_id)
        if cliente and cliente['usuario_id'] == usuario_id:
            return cliente
        return None

    def criar_cliente(self, usuario_id, dados):
        cliente = {'id': next(self._ids), 'usuario_id': usuario_id, **dados}
        self.clientes[cliente['id']] = cliente
        return cliente

    def atualizar_cliente(self, cliente_id, usuario_id, dados):
        cliente = self.buscar_cliente(cliente_id, usuario_id)
        if cliente:
            cliente.update(dados)
        return cliente

    def excluir_cliente(self, cliente_id, usuario_id):
        if not self.buscar_cliente(cliente_id, usuario_id):
            return 0
        contas = list(self.contas_receber.values()) + list(self.contas_pagar.values())
        if any(c['cliente_id'] == cliente_id for c in contas):
            raise ClienteEmUsoError("Cliente possui contas, vendas ou lembretes vinculados")
        del self.clientes[cliente_id]
        return 1

    # ---------- Contas ----------
    def _contas(self, tipo):
        return self.contas_receber if tipo == 'receber' else self.contas_pagar

    def listar_contas(self, tipo, usuario_id):
        return [c for c in self._contas(tipo).values() if c['usuario_id'] == usuario_id]

    def buscar_conta(self, tipo, conta_id, usuario_id):
        conta = self._contas(tipo).get(conta_id)
        if conta and conta['usuario_id'] == usuario_id:
            return conta
        return None

    def criar_conta(self, tipo, usuario_id, dados):
        conta = {'id': next(self._ids), 'usuario_id': usuario_id, 'status': 'pending', **dados}
        self._contas(tipo)[conta['id']] = conta
        return conta

    def atualizar_conta(self, tipo, conta_id, usuario_id, dados):
        conta = self.buscar_conta(tipo, conta_id, usuario_id)
        if conta:
            conta.update(dados)
        return conta

    def marcar_conta_paga(self, tipo, conta_id, usuario_id, pago_em):
        return self.atualizar_conta(tipo, conta_id, usuario_id, {'status': 'paid', 'pago_em': pago_em})

    def excluir_conta(self, tipo, conta_id, usuario_id):
        if not self.buscar_conta(tipo, conta_id, usuario_id):
            return 0
        del self._contas(tipo)[conta_id]
        return 1

    # ---------- Lembretes ----------
    def listar_lembretes(self, usuario_id):
        return [l for l in self.lembretes.values() if l['usuario_id'] == usuario_id]

    def buscar_lembrete(self, lembrete_id, usuario_id):
        lembrete = self.lembretes.get(lembrete_id)
        if lembrete and lembrete['usuario_id'] == usuario_id:
            return lembrete
        return None

    def criar_lembrete(self, usuario_id, dados):
        lembrete = {'id': next(self._ids), 'usuario_id': usuario_id, 'ativo': True, **dados}
        self.lembretes[lembrete['id']] = lembrete
        return lembrete

    def atualizar_lembrete(self, lembrete_id, usuario_id, dados):
        lembrete = self.buscar_lembrete(lembrete_id, usuario_id)
        if lembrete:
            lembrete.update(dados)
        return lembrete

    def excluir_lembrete(self, lembrete_id, usuario_id):
        lembrete = self.buscar_lembrete(lembrete_id, usuario_id)
        if not lembrete:
            return 0
        if any(log['lembrete_id'] == lembrete_id for log in self.logs):
            lembrete['ativo'] = False
        else:
            del self.lembretes[lembrete_id]
        return 1

    def listar_lembretes_ativos(self, usuario_id):
        if usuario_id in self.falhar_usuarios:
            raise RuntimeError(f"falha no usuário {usuario_id}")
        return [l for l in self.lembretes.values() if l['usuario_id'] == usuario_id and l['ativo']]

    def listar_contas_receber_pendentes(self, usuario_id):
        return [c for c in self.contas_receber.values()
                if c['usuario_id'] == usuario_id and c['status'] == 'pending']

    def existe_log_lembrete_no_dia(self, lembrete_id, conta_receber_id, dia):
        return any(
            log['lembrete_id'] == lembrete_id and log['conta_receber_id'] == conta_receber_id
            and log['criado_em'].date() == dia
            for log in self.logs
        )

    def criar_log_lembrete(self, lembrete_id, conta_receber_id, cliente_id, mensagem, status,
                           erro=None, enviado_em=None, criado_em=None):
        log = {
            'id': next(self._ids), 'lembrete_id': lembrete_id, 'conta_receber_id': conta_receber_id,
            'cliente_id': cliente_id, 'mensagem': mensagem, 'status': status, 'erro': erro,
            'enviado_em': enviado_em, 'criado_em': criado_em,
        }
        self.logs.append(log)
        return log

    def buscar_instancia_whatsapp_ativa(self, usuario_id):
        return None

    # ---------- Planos ----------
    def listar_planos(self, apenas_ativos=True):
        return self.planos

    def verificar_limite_plano(self, usuario_id, tipo='max_transacoes', adicionais=1):
        self.ultimo_pedido_limite = (usuario_id, tipo, adicionais)
        return dict(self.limite)

    def gerar_cobrancas_mensais_planos(self, hoje):
        self.cobrancas_geradas.append(hoje)
        return 2

    # ---------- Vendas parceladas ----------
    def _com_cliente(self, venda):
        cliente = self.clientes.get(venda['cliente_id'], {})
        return {**venda, 'cliente_nome': cliente.get('nome'), 'cliente_whatsapp': cliente.get('whatsapp')}

    def criar_venda_parcelada(self, usuario_id, cliente_id, descricao, valor_total, quantidade_parcelas,
                              valor_parcela, primeiro_vencimento, token, observacoes=None):
        venda = {
            'id': next(self._ids), 'usuario_id': usuario_id, 'cliente_id': cliente_id, 'descricao': descricao,
            'valor_total': valor_total, 'quantidade_parcelas': quantidade_parcelas,
            'valor_parcela': valor_parcela, 'primeiro_vencimento': primeiro_vencimento,
            'token_confirmacao': token, 'status': VENDA_PENDENTE, 'observacoes': observacoes,
            'foto_documento_url': None, 'cliente_assinou_em': None,
            'usuario_revisou_em': None, 'usuario_aprovou_em': None,
        }
        self.vendas[venda['id']] = venda
        return dict(venda)

    def buscar_venda_parcelada(self, venda_id, usuario_id):
        venda = self.vendas.get(venda_id)
        if venda and venda['usuario_id'] == usuario_id:
            return self._com_cliente(venda)
        return None

    def buscar_venda_por_token(self, token):
        for venda in self.vendas.values():
            if venda['token_confirmacao'] == token:
                return self._com_cliente(venda)
        return None

    def confirmar_venda_por_token(self, token, foto_documento_url, assinado_em):
        for venda in self.vendas.values():
            if venda['token_confirmacao'] == token and venda['status'] == VENDA_PENDENTE:
                venda.update(status=VENDA_CONFIRMADA, foto_documento_url=foto_documento_url,
                             cliente_assinou_em=assinado_em)
                return dict(venda)
        return None

    def aprovar_venda_e_gerar_parcelas(self, venda_id, usuario_id, parcelas, aprovado_em, observacoes=None):
        venda = self.vendas.get(venda_id)
        if not venda or venda['usuario_id'] != usuario_id or venda['status'] != VENDA_CONFIRMADA:
            return None
        venda.update(status=VENDA_APROVADA, usuario_revisou_em=aprovado_em, usuario_aprovou_em=aprovado_em)
        if observacoes is not None:
            venda['observacoes'] = observacoes
        for parcela in parcelas:
            conta_id = next(self._ids)
            self.contas_receber[conta_id] = {
                'id': conta_id, 'usuario_id': usuario_id, 'cliente_id': venda['cliente_id'],
                'descricao': parcela.descricao, 'valor': parcela.valor, 'vencimento': parcela.vencimento,
                'status': 'pending', 'tipo': 'installment', 'numero_parcela': parcela.numero,
                'total_parcelas': parcela.total, 'parent_id': venda_id,
            }
        return dict(venda)

    def rejeitar_venda(self, venda_id, usuario_id, observacoes, revisado_em):
        venda = self.vendas.get(venda_id)
        if not venda or venda['usuario_id'] != usuario_id or venda['status'] != VENDA_CONFIRMADA:
            return None
        venda.update(status=VENDA_REJEITADA, observacoes=observacoes, usuario_revisou_em=revisado_em)
        return dict(venda)

    def regenerar_token_venda(self, venda_id, usuario_id, novo_token):
        venda = self.vendas.get(venda_id)
        if not venda or venda['usuario_id'] != usuario_id or venda['status'] == VENDA_APROVADA:
            return None
        venda.update(token_confirmacao=novo_token, status=VENDA_PENDENTE, foto_documento_url=None,
                     cliente_assinou_em=None, usuario_revisou_em=None)
        return dict(venda)

    def parcelas_da_venda(self, venda_id):
        return sorted(
            (c for c in self.contas_receber.values() if c.get('parent_id') == venda_id),
            key=lambda c: c['numero_parcela']
        )


class FakeWhatsApp:
    def __init__(self, sucesso=True, erro='Instância desconectada', explodir=False):
        self.sucesso = sucesso
        self.erro = erro
        self.explodir = explodir
        self.enviadas = []

    def enviar_mensagem(self, telefone, mensagem, usuario_id=None):
        if self.explodir:
            raise ConnectionError("gateway fora do ar")
        self.enviadas.append({'telefone': telefone, 'mensagem': mensagem, 'usuario_id': usuario_id})
        if self.sucesso:
            return {'success': True, 'error': None, 'message_id': 'MSG1'}
        return {'success': False, 'error': self.erro, 'message_id': None}

    def link_confirmacao(self, token):
        return f"http://localhost:5000/confirm-sale/{token}"

    def montar_pedido_confirmacao(self, venda):
        return f"Confirme: {self.link_confirmacao(venda['token_confirmacao'])}"

    def montar_aviso_aprovacao(self, venda):
        return f"Aprovada: {venda['descricao']}"

    def montar_aviso_rejeicao(self, venda):
        return f"Rejeitada: {venda.get('observacoes')}"


class Relogio:
    """Relógio ajustável para os serviços"""

    def __init__(self, agora):
        self.agora = agora

    def __call__(self):
        return self.agora


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def relogio():
    return Relogio(horario_br(2024, 6, 7, 9, 0))
