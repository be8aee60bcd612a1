"""
Modelos de dados e constantes do domínio financeiro
Os registros do banco circulam como dict (RealDictCursor); aqui ficam os
valores válidos de status/gatilhos e as estruturas calculadas em memória
"""

from dataclasses import dataclass, asdict
from datetime import date
from decimal import Decimal
from typing import Optional

@dataclass
class Parcela:
    """Parcela calculada de uma venda parcelada, antes de virar conta a receber"""
    numero: int
    total: int
    valor: Decimal
    vencimento: date
    descricao: str = ""

    def as_dict(self):
        return asdict(self)

@dataclass
class ResultadoProcessamento:
    """Resumo de um ciclo do agendador de lembretes"""
    usuarios: int = 0
    avaliados: int = 0
    enviados: int = 0
    falhas: int = 0
    ignorados_duplicados: int = 0
    erro: Optional[str] = None

    def as_dict(self):
        return asdict(self)

# Gatilhos de lembrete
TIPOS_GATILHO = {
    'before_due': 'Dias antes do vencimento',
    'on_due': 'No dia do vencimento',
    'after_due': 'Dias após o vencimento',
}

# Status de contas a receber/pagar
STATUS_CONTA = {
    'pending': 'Pendente',
    'paid': 'Paga',
}

# Tipos de conta
TIPOS_CONTA = {
    'single': 'Avulsa',
    'installment': 'Parcela',
    'recurring': 'Recorrente',
}

# Status de envio de lembrete
STATUS_LOG = {
    'sent': 'Enviado',
    'failed': 'Falhou',
}

# Estados da venda parcelada
VENDA_PENDENTE = 'pending'
VENDA_CONFIRMADA = 'confirmed'
VENDA_APROVADA = 'approved'
VENDA_REJEITADA = 'rejected'

STATUS_VENDA = {
    VENDA_PENDENTE: 'Aguardando confirmação do cliente',
    VENDA_CONFIRMADA: 'Aguardando aprovação',
    VENDA_APROVADA: 'Aprovada',
    VENDA_REJEITADA: 'Rejeitada',
}

# Variáveis aceitas nos templates de lembrete
VARIAVEIS_LEMBRETE = {
    'cliente': 'Nome do cliente',
    'valor': 'Valor da conta (R$ 0,00)',
    'vencimento': 'Data de vencimento (DD/MM/AAAA)',
    'descricao': 'Descrição da conta',
    'dias_atraso': 'Dias em atraso (0 se não vencida)',
}

# Cliente técnico usado na cobrança de planos
DOCUMENTO_CLIENTE_SISTEMA = 'SYSTEM'
