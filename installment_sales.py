"""
Vendas Parceladas - fluxo de confirmação e aprovação

    pending   --cliente envia documento (token)--> confirmed
    confirmed --vendedor aprova-->                 approved  (gera parcelas)
    confirmed --vendedor rejeita-->                rejected
    rejected  --vendedor gera novo token-->        pending

O token de confirmação é a única credencial do lado do cliente.
"""

import logging
from decimal import Decimal
from typing import List

from errors import (
    DadosInvalidosError, NaoEncontradoError, VendaNaoEncontradaError,
    VendaJaProcessadaError, LimitePlanoExcedidoError,
)
from models import Parcela, VENDA_PENDENTE, VENDA_CONFIRMADA, VENDA_APROVADA
from utils import agora_br, arredondar_dinheiro, adicionar_meses, gerar_token_confirmacao, para_data

logger = logging.getLogger(__name__)


def calcular_valor_parcela(valor_total, quantidade) -> Decimal:
    return arredondar_dinheiro(arredondar_dinheiro(valor_total) / Decimal(quantidade))


def calcular_parcelas(descricao, valor_total, quantidade, primeiro_vencimento) -> List[Parcela]:
    """
    Parcelas mensais a partir do primeiro vencimento.
    As n-1 primeiras valem total/n arredondado; a última absorve o resto,
    de modo que a soma é exatamente o total.
    """
    quantidade = int(quantidade)
    if quantidade < 1:
        raise DadosInvalidosError("Quantidade de parcelas deve ser maior que zero")

    total = arredondar_dinheiro(valor_total)
    valor = calcular_valor_parcela(total, quantidade)
    ultima = total - valor * (quantidade - 1)
    if valor <= 0 or ultima <= 0:
        raise DadosInvalidosError(
            f"Valor total {total} insuficiente para {quantidade} parcelas"
        )
    primeiro = para_data(primeiro_vencimento)

    parcelas = []
    for i in range(quantidade):
        parcelas.append(Parcela(
            numero=i + 1,
            total=quantidade,
            valor=ultima if i == quantidade - 1 else valor,
            vencimento=adicionar_meses(primeiro, i),
            descricao=f"{descricao} - Parcela {i + 1}/{quantidade}",
        ))
    return parcelas


class SaleConfirmationWorkflow:
    def __init__(self, database_manager, whatsapp_api=None, relogio=agora_br):
        self.db = database_manager
        self.whatsapp_api = whatsapp_api
        self.relogio = relogio

    # ---------- Criação ----------
    def criar_venda(self, usuario_id, dados):
        """Cria a venda em 'pending' com token novo e envia o link ao cliente"""
        try:
            cliente_id = int(dados.get('cliente_id'))
            quantidade = int(dados.get('quantidade_parcelas'))
            valor_total = arredondar_dinheiro(dados.get('valor_total'))
            primeiro_vencimento = para_data(dados.get('primeiro_vencimento'))
        except (TypeError, ValueError) as e:
            raise DadosInvalidosError(f"Dados da venda inválidos: {e}")

        descricao = (dados.get('descricao') or '').strip()
        if not descricao:
            raise DadosInvalidosError("Descrição obrigatória")
        if quantidade < 1:
            raise DadosInvalidosError("Quantidade de parcelas deve ser maior que zero")
        if valor_total <= 0:
            raise DadosInvalidosError("Valor total deve ser positivo")
        if primeiro_vencimento is None:
            raise DadosInvalidosError("Primeiro vencimento obrigatório")
        calcular_parcelas(descricao, valor_total, quantidade, primeiro_vencimento)

        cliente = self.db.buscar_cliente(cliente_id, usuario_id)
        if not cliente:
            raise NaoEncontradoError("Cliente não encontrado")

        venda = self.db.criar_venda_parcelada(
            usuario_id=usuario_id,
            cliente_id=cliente_id,
            descricao=descricao,
            valor_total=valor_total,
            quantidade_parcelas=quantidade,
            valor_parcela=calcular_valor_parcela(valor_total, quantidade),
            primeiro_vencimento=primeiro_vencimento,
            token=gerar_token_confirmacao(),
            observacoes=dados.get('observacoes'),
        )
        venda = {**venda, 'cliente_nome': cliente['nome'], 'cliente_whatsapp': cliente['whatsapp']}
        logger.info(f"Venda parcelada {venda['id']} criada para o usuário {usuario_id}")

        if self.whatsapp_api is not None:
            self._notificar(venda, self.whatsapp_api.montar_pedido_confirmacao(venda), usuario_id)
        return venda

    # ---------- Lado do cliente (público) ----------
    def obter_venda_publica(self, token):
        venda = self.db.buscar_venda_por_token(token)
        if not venda:
            raise VendaNaoEncontradaError("Venda não encontrada ou link inválido")
        return venda

    def confirmar_por_token(self, token, foto_documento_url):
        """pending -> confirmed; nunca reassina nem regride uma venda já processada"""
        if not foto_documento_url:
            raise DadosInvalidosError("Foto do documento obrigatória")

        confirmada = self.db.confirmar_venda_por_token(token, foto_documento_url, self.relogio())
        if confirmada:
            logger.info(f"Venda {confirmada['id']} confirmada pelo cliente")
            return confirmada

        venda = self.obter_venda_publica(token)
        raise VendaJaProcessadaError("Esta venda já foi processada", status_atual=venda['status'])

    # ---------- Lado do vendedor ----------
    def _buscar_venda(self, venda_id, usuario_id):
        venda = self.db.buscar_venda_parcelada(venda_id, usuario_id)
        if not venda:
            raise VendaNaoEncontradaError("Venda não encontrada")
        return venda

    def revisar(self, venda_id, usuario_id, aprovado, observacoes=None):
        if aprovado:
            return self.aprovar(venda_id, usuario_id, observacoes)
        return self.rejeitar(venda_id, usuario_id, observacoes)

    def aprovar(self, venda_id, usuario_id, observacoes=None):
        """confirmed -> approved, gerando as parcelas na mesma transação"""
        venda = self._buscar_venda(venda_id, usuario_id)
        if venda['status'] != VENDA_CONFIRMADA:
            raise VendaJaProcessadaError(
                f"Venda não pode ser aprovada no status '{venda['status']}'", status_atual=venda['status']
            )

        quantidade = int(venda['quantidade_parcelas'])
        limite = self.db.verificar_limite_plano(usuario_id, 'max_transacoes', quantidade)
        if not limite['pode_criar']:
            raise LimitePlanoExcedidoError(
                f"Não é possível criar {quantidade} parcelas. Limite de {limite['maximo']} transações atingido. "
                f"Atual: {limite['atual']}"
            )

        parcelas = calcular_parcelas(
            venda['descricao'], venda['valor_total'], quantidade, venda['primeiro_vencimento']
        )
        aprovada = self.db.aprovar_venda_e_gerar_parcelas(
            venda_id, usuario_id, parcelas, self.relogio(), observacoes
        )
        if not aprovada:
            raise VendaJaProcessadaError("Venda já foi processada por outra requisição")

        venda = {**venda, **aprovada}
        if self.whatsapp_api is not None:
            self._notificar(venda, self.whatsapp_api.montar_aviso_aprovacao(venda), usuario_id)
        return venda

    def rejeitar(self, venda_id, usuario_id, observacoes=None):
        venda = self._buscar_venda(venda_id, usuario_id)
        if venda['status'] != VENDA_CONFIRMADA:
            raise VendaJaProcessadaError(
                f"Venda não pode ser rejeitada no status '{venda['status']}'", status_atual=venda['status']
            )

        rejeitada = self.db.rejeitar_venda(venda_id, usuario_id, observacoes, self.relogio())
        if not rejeitada:
            raise VendaJaProcessadaError("Venda já foi processada por outra requisição")

        venda = {**venda, **rejeitada}
        logger.info(f"Venda {venda_id} rejeitada: {observacoes}")
        if self.whatsapp_api is not None:
            self._notificar(venda, self.whatsapp_api.montar_aviso_rejeicao(venda), usuario_id)
        return venda

    def regenerar_token(self, venda_id, usuario_id):
        """Invalida o link anterior e reabre a venda em 'pending'"""
        venda = self._buscar_venda(venda_id, usuario_id)
        if venda['status'] == VENDA_APROVADA:
            raise VendaJaProcessadaError("Venda aprovada não pode ser reaberta", status_atual=venda['status'])

        reaberta = self.db.regenerar_token_venda(venda_id, usuario_id, gerar_token_confirmacao())
        if not reaberta:
            raise VendaJaProcessadaError("Venda aprovada não pode ser reaberta", status_atual=VENDA_APROVADA)

        venda = {**venda, **reaberta}
        logger.info(f"Novo token gerado para a venda {venda_id} (status {VENDA_PENDENTE})")
        if self.whatsapp_api is not None:
            self._notificar(venda, self.whatsapp_api.montar_pedido_confirmacao(venda), usuario_id)
        return venda

    def _notificar(self, venda, mensagem, usuario_id):
        """Aviso ao cliente; falhas não desfazem a transição já gravada"""
        try:
            envio = self.whatsapp_api.enviar_mensagem(venda.get('cliente_whatsapp'), mensagem, usuario_id=usuario_id)
            if not envio.get('success'):
                logger.warning(f"Aviso da venda {venda['id']} não enviado: {envio.get('error')}")
        except Exception as e:
            logger.error(f"Erro ao notificar cliente da venda {venda['id']}: {e}")
