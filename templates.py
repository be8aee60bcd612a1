"""
Templates de mensagens de lembrete
Validação e substituição das variáveis {cliente}, {valor}, {vencimento},
{descricao} e {dias_atraso}
"""

import re
import logging
from datetime import date
from typing import Dict, Any, List

from models import VARIAVEIS_LEMBRETE
from utils import formatar_data_br, formatar_valor_lembrete, para_data

logger = logging.getLogger(__name__)


class TemplateManager:
    def __init__(self):
        self.variaveis_disponiveis = dict(VARIAVEIS_LEMBRETE)

    def validar_template(self, conteudo: str) -> List[str]:
        """Valida conteúdo do template verificando variáveis"""
        erros = []
        if not conteudo or not conteudo.strip():
            return ["Mensagem vazia"]

        for variavel in re.findall(r'\{(\w+)\}', conteudo):
            if variavel not in self.variaveis_disponiveis:
                erros.append(f"Variável desconhecida: {{{variavel}}}")

        if conteudo.count('{') != conteudo.count('}'):
            erros.append("Chaves desbalanceadas no template")

        return erros

    def preparar_dados(self, conta: Dict[str, Any], hoje: date) -> Dict[str, str]:
        """Valores das variáveis para uma conta a receber"""
        vencimento = para_data(conta['vencimento'])
        dias_atraso = max(0, (hoje - vencimento).days)
        return {
            'cliente': conta.get('cliente_nome') or '',
            'valor': formatar_valor_lembrete(conta['valor']),
            'vencimento': formatar_data_br(vencimento),
            'descricao': conta.get('descricao') or '',
            'dias_atraso': str(dias_atraso),
        }

    def processar_template(self, conteudo: str, conta: Dict[str, Any], hoje: date) -> str:
        """Substitui todas as ocorrências das variáveis pelos dados da conta"""
        texto = conteudo
        for variavel, valor in self.preparar_dados(conta, hoje).items():
            texto = texto.replace(f"{{{variavel}}}", valor)
        return texto

    def obter_variaveis_disponiveis(self) -> Dict[str, str]:
        return dict(self.variaveis_disponiveis)
