"""
Cobrança mensal de planos
Verificação a cada 24h (e na inicialização); só gera cobranças no dia 1
"""

import logging
from datetime import timedelta

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.date import DateTrigger

from utils import agora_br, converter_para_br

logger = logging.getLogger(__name__)


class BillingScheduler:
    def __init__(self, database_manager, relogio=agora_br, intervalo_horas=24, timezone='America/Sao_Paulo'):
        self.db = database_manager
        self.relogio = relogio
        self.intervalo_horas = intervalo_horas

        self.scheduler = BackgroundScheduler(
            timezone=pytz.timezone(timezone),
            job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': 3600}
        )
        self.running = False

    def start(self):
        """Agenda a verificação periódica e uma execução imediata"""
        if self.running:
            return

        self.scheduler.add_job(
            func=self.gerar_cobranca_mensal,
            trigger=IntervalTrigger(hours=self.intervalo_horas, timezone=self.scheduler.timezone),
            id='cobranca_mensal_planos',
            name=f'Cobrança mensal de planos ({self.intervalo_horas}h)',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.gerar_cobranca_mensal,
            trigger=DateTrigger(run_date=self.relogio() + timedelta(seconds=1)),
            id='cobranca_bootstrap',
            name='Bootstrap: cobrança na inicialização',
            replace_existing=True
        )
        self.scheduler.start()
        self.running = True
        logger.info('💳 Serviço de cobrança de planos iniciado')

    def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info('💳 Serviço de cobrança de planos parado')

    def is_running(self):
        return self.running and self.scheduler.running

    def gerar_cobranca_mensal(self, agora=None):
        """Execução agendada: no-op fora do dia 1; erros são apenas registrados"""
        agora = converter_para_br(agora or self.relogio())
        try:
            logger.info('💳 Verificando necessidade de gerar cobranças mensais...')
            if agora.day != 1:
                return None

            logger.info('💳 Gerando cobranças mensais para todos os planos ativos...')
            criadas = self.db.gerar_cobrancas_mensais_planos(agora.date())
            logger.info(f'💳 Cobranças mensais geradas com sucesso ({criadas})')
            return criadas
        except Exception as e:
            logger.error(f'💳 Erro ao gerar cobranças mensais: {e}')
            return None

    def disparar_cobranca_manual(self, agora=None):
        """Trigger manual (admin): ignora o dia do mês e propaga erros"""
        agora = converter_para_br(agora or self.relogio())
        logger.info('💳 Trigger manual de cobrança mensal iniciado...')
        criadas = self.db.gerar_cobrancas_mensais_planos(agora.date())
        logger.info(f'💳 Trigger manual de cobrança mensal concluído ({criadas})')
        return criadas
