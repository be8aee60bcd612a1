from datetime import date
from decimal import Decimal

import pytest

from conftest import FakeWhatsApp
from errors import (
    DadosInvalidosError, NaoEncontradoError, VendaNaoEncontradaError,
    VendaJaProcessadaError, LimitePlanoExcedidoError,
)
from installment_sales import SaleConfirmationWorkflow, calcular_parcelas, calcular_valor_parcela


@pytest.fixture
def loja(db):
    usuario = db.add_usuario()
    cliente = db.add_cliente(usuario['id'])
    return usuario, cliente


@pytest.fixture
def fluxo(db, whatsapp, relogio):
    return SaleConfirmationWorkflow(db, whatsapp, relogio=relogio)


def _nova_venda(fluxo, usuario, cliente, **extra):
    dados = {
        'cliente_id': cliente['id'],
        'descricao': 'Geladeira',
        'valor_total': '1200.00',
        'quantidade_parcelas': 12,
        'primeiro_vencimento': '2024-07-10',
        **extra,
    }
    return fluxo.criar_venda(usuario['id'], dados)


class TestCalculoParcelas:
    def test_even_split(self):
        parcelas = calcular_parcelas('Geladeira', Decimal('1200.00'), 12, date(2024, 7, 10))

        assert len(parcelas) == 12
        assert all(p.valor == Decimal('100.00') for p in parcelas)
        assert parcelas[0].descricao == 'Geladeira - Parcela 1/12'
        assert parcelas[-1].descricao == 'Geladeira - Parcela 12/12'

    def test_last_installment_absorbs_remainder(self):
        parcelas = calcular_parcelas('TV', Decimal('100.00'), 3, date(2024, 1, 15))

        assert [p.valor for p in parcelas] == [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]
        assert sum(p.valor for p in parcelas) == Decimal('100.00')

    def test_last_installment_can_be_smaller(self):
        parcelas = calcular_parcelas('Sofá', Decimal('200.00'), 3, date(2024, 1, 15))

        assert [p.valor for p in parcelas] == [Decimal('66.67'), Decimal('66.67'), Decimal('66.66')]
        assert sum(p.valor for p in parcelas) == Decimal('200.00')

    def test_monthly_due_dates(self):
        parcelas = calcular_parcelas('TV', Decimal('300'), 3, date(2024, 1, 31))

        assert [p.vencimento for p in parcelas] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]

    def test_installment_value_rounds_half_up(self):
        assert calcular_valor_parcela(Decimal('0.05'), 2) == Decimal('0.03')

    def test_zero_installments_rejected(self):
        with pytest.raises(DadosInvalidosError):
            calcular_parcelas('TV', Decimal('100'), 0, date(2024, 1, 1))

    @pytest.mark.parametrize('total, quantidade', [
        (Decimal('0.05'), 10),
        (Decimal('0.15'), 10),
        (Decimal('0.04'), 12),
    ])
    def test_total_too_small_for_installments(self, total, quantidade):
        with pytest.raises(DadosInvalidosError):
            calcular_parcelas('Chiclete', total, quantidade, date(2024, 1, 1))


class TestCriacao:
    def test_creates_pending_sale_and_sends_link(self, fluxo, loja, whatsapp):
        usuario, cliente = loja

        venda = _nova_venda(fluxo, usuario, cliente)

        assert venda['status'] == 'pending'
        assert venda['valor_parcela'] == Decimal('100.00')
        assert venda['token_confirmacao']
        assert venda['token_confirmacao'] in whatsapp.enviadas[0]['mensagem']
        assert whatsapp.enviadas[0]['telefone'] == cliente['whatsapp']

    def test_tokens_are_unique(self, fluxo, loja):
        usuario, cliente = loja
        tokens = {_nova_venda(fluxo, usuario, cliente)['token_confirmacao'] for _ in range(5)}
        assert len(tokens) == 5

    def test_client_must_belong_to_user(self, fluxo, db, loja):
        usuario, _ = loja
        estranho = db.add_cliente(db.add_usuario()['id'])

        with pytest.raises(NaoEncontradoError):
            _nova_venda(fluxo, usuario, estranho)

    @pytest.mark.parametrize('campo, valor', [
        ('quantidade_parcelas', 0),
        ('valor_total', '0'),
        ('descricao', ''),
        ('primeiro_vencimento', 'amanhã'),
        ('valor_total', '0.05'),
    ])
    def test_invalid_input(self, fluxo, loja, campo, valor):
        usuario, cliente = loja
        with pytest.raises(DadosInvalidosError):
            _nova_venda(fluxo, usuario, cliente, **{campo: valor})

    def test_notification_failure_does_not_undo_creation(self, db, relogio, loja):
        usuario, cliente = loja
        fluxo = SaleConfirmationWorkflow(db, FakeWhatsApp(explodir=True), relogio=relogio)

        venda = _nova_venda(fluxo, usuario, cliente)

        assert db.vendas[venda['id']]['status'] == 'pending'


class TestConfirmacao:
    def test_pending_to_confirmed(self, fluxo, db, loja, relogio):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)

        confirmada = fluxo.confirmar_por_token(venda['token_confirmacao'], 'https://cdn/doc.jpg')

        assert confirmada['status'] == 'confirmed'
        assert confirmada['foto_documento_url'] == 'https://cdn/doc.jpg'
        assert confirmada['cliente_assinou_em'] == relogio.agora

    def test_unknown_token(self, fluxo):
        with pytest.raises(VendaNaoEncontradaError):
            fluxo.confirmar_por_token('nao-existe', 'https://cdn/doc.jpg')

    def test_second_confirmation_is_rejected(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)
        token = venda['token_confirmacao']
        fluxo.confirmar_por_token(token, 'https://cdn/primeira.jpg')

        with pytest.raises(VendaJaProcessadaError) as exc:
            fluxo.confirmar_por_token(token, 'https://cdn/segunda.jpg')

        assert exc.value.status_atual == 'confirmed'
        assert db.vendas[venda['id']]['foto_documento_url'] == 'https://cdn/primeira.jpg'

    def test_document_is_required(self, fluxo, loja):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)

        with pytest.raises(DadosInvalidosError):
            fluxo.confirmar_por_token(venda['token_confirmacao'], '')


class TestRevisao:
    def _confirmada(self, fluxo, usuario, cliente, **extra):
        venda = _nova_venda(fluxo, usuario, cliente, **extra)
        fluxo.confirmar_por_token(venda['token_confirmacao'], 'https://cdn/doc.jpg')
        return venda

    def test_approval_generates_installments(self, fluxo, db, loja, whatsapp):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)

        aprovada = fluxo.aprovar(venda['id'], usuario['id'], 'ok')

        assert aprovada['status'] == 'approved'
        parcelas = db.parcelas_da_venda(venda['id'])
        assert len(parcelas) == 12
        assert all(p['valor'] == Decimal('100.00') for p in parcelas)
        assert parcelas[0]['vencimento'] == date(2024, 7, 10)
        assert parcelas[11]['vencimento'] == date(2025, 6, 10)
        assert all(p['tipo'] == 'installment' and p['status'] == 'pending' for p in parcelas)
        assert db.ultimo_pedido_limite == (usuario['id'], 'max_transacoes', 12)
        assert whatsapp.enviadas[-1]['mensagem'] == 'Aprovada: Geladeira'

    def test_pending_sale_cannot_be_approved(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)

        with pytest.raises(VendaJaProcessadaError):
            fluxo.aprovar(venda['id'], usuario['id'])
        assert db.parcelas_da_venda(venda['id']) == []

    def test_double_approval_creates_installments_once(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)
        fluxo.aprovar(venda['id'], usuario['id'])

        with pytest.raises(VendaJaProcessadaError):
            fluxo.aprovar(venda['id'], usuario['id'])
        assert len(db.parcelas_da_venda(venda['id'])) == 12

    def test_lost_race_is_reported(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)
        db.aprovar_venda_e_gerar_parcelas = lambda *args, **kwargs: None

        with pytest.raises(VendaJaProcessadaError):
            fluxo.aprovar(venda['id'], usuario['id'])

    def test_plan_limit_blocks_approval(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)
        db.limite = {'pode_criar': False, 'atual': 95, 'maximo': 100}

        with pytest.raises(LimitePlanoExcedidoError):
            fluxo.aprovar(venda['id'], usuario['id'])
        assert db.vendas[venda['id']]['status'] == 'confirmed'
        assert db.parcelas_da_venda(venda['id']) == []

    def test_other_users_sale_is_not_found(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)
        intruso = db.add_usuario(username='intruso')

        with pytest.raises(VendaNaoEncontradaError):
            fluxo.aprovar(venda['id'], intruso['id'])

    def test_rejection(self, fluxo, db, loja, whatsapp):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)

        rejeitada = fluxo.revisar(venda['id'], usuario['id'], False, 'Documento ilegível')

        assert rejeitada['status'] == 'rejected'
        assert rejeitada['observacoes'] == 'Documento ilegível'
        assert db.parcelas_da_venda(venda['id']) == []
        assert whatsapp.enviadas[-1]['mensagem'] == 'Rejeitada: Documento ilegível'

    def test_rejected_sale_cannot_be_approved(self, fluxo, loja):
        usuario, cliente = loja
        venda = self._confirmada(fluxo, usuario, cliente)
        fluxo.rejeitar(venda['id'], usuario['id'], 'não')

        with pytest.raises(VendaJaProcessadaError):
            fluxo.revisar(venda['id'], usuario['id'], True)


class TestNovoToken:
    def test_rejected_sale_reopens_with_new_token(self, fluxo, db, loja):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)
        antigo = venda['token_confirmacao']
        fluxo.confirmar_por_token(antigo, 'https://cdn/doc.jpg')
        fluxo.rejeitar(venda['id'], usuario['id'], 'foto borrada')

        reaberta = fluxo.regenerar_token(venda['id'], usuario['id'])

        assert reaberta['status'] == 'pending'
        assert reaberta['token_confirmacao'] != antigo
        assert reaberta['foto_documento_url'] is None
        with pytest.raises(VendaNaoEncontradaError):
            fluxo.obter_venda_publica(antigo)
        assert fluxo.confirmar_por_token(reaberta['token_confirmacao'], 'https://cdn/nova.jpg')['status'] == 'confirmed'

    def test_approved_sale_cannot_be_reopened(self, fluxo, loja):
        usuario, cliente = loja
        venda = _nova_venda(fluxo, usuario, cliente)
        fluxo.confirmar_por_token(venda['token_confirmacao'], 'https://cdn/doc.jpg')
        fluxo.aprovar(venda['id'], usuario['id'])

        with pytest.raises(VendaJaProcessadaError):
            fluxo.regenerar_token(venda['id'], usuario['id'])
