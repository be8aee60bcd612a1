"""
Agendador de Lembretes de Pagamento
- Roda a cada hora (minuto configurável) no fuso America/Sao_Paulo
- Para cada usuário com lembretes ativos, avalia as contas a receber pendentes
- Envia via WhatsApp e registra um log por tentativa (sent/failed)
- No máximo um envio por (lembrete, conta, dia)
"""

import logging
from datetime import timedelta

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from models import ResultadoProcessamento
from utils import agora_br, converter_para_br, para_data

logger = logging.getLogger(__name__)


def gatilho_atingido(tipo_gatilho, dias_gatilho, vencimento, hoje):
    """Hoje corresponde ao dia de disparo do gatilho?"""
    dias = int(dias_gatilho or 0)
    if tipo_gatilho == 'before_due':
        return hoje == vencimento - timedelta(days=dias)
    if tipo_gatilho == 'on_due':
        return hoje == vencimento
    if tipo_gatilho == 'after_due':
        return hoje == vencimento + timedelta(days=dias)
    logger.warning(f"Tipo de gatilho desconhecido: {tipo_gatilho}")
    return False


def horario_confere(horario_gatilho, agora):
    """Comparação exata HH:MM (valores HH:MM:SS usam só os 5 primeiros caracteres)"""
    return agora.strftime('%H:%M') == str(horario_gatilho or '')[:5]


class ReminderScheduler:
    def __init__(self, database_manager, whatsapp_api, template_manager, relogio=agora_br,
                 minuto='0', timezone='America/Sao_Paulo'):
        """Inicializa o agendador de lembretes"""
        self.db = database_manager
        self.whatsapp_api = whatsapp_api
        self.template_manager = template_manager
        self.relogio = relogio
        self.minuto = minuto

        self.scheduler = BackgroundScheduler(
            timezone=pytz.timezone(timezone),
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            }
        )
        self.running = False
        self.ultimo_resultado = None

    # ===================== Controle do Scheduler =====================
    def start(self):
        """Inicia o agendador e agenda uma execução imediata"""
        if self.running:
            logger.info("Agendador de lembretes já está em execução")
            return

        self.scheduler.add_job(
            func=self.processar_lembretes,
            trigger=CronTrigger(minute=self.minuto, timezone=self.scheduler.timezone),
            id='processar_lembretes',
            name=f'Lembretes de pagamento (minuto {self.minuto} de cada hora)',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.processar_lembretes,
            trigger=DateTrigger(run_date=self.relogio() + timedelta(seconds=3)),
            id='lembretes_bootstrap',
            name='Bootstrap: lembretes na inicialização',
            replace_existing=True
        )
        self.scheduler.start()
        self.running = True
        logger.info("🔔 Serviço de lembretes iniciado")

    def stop(self):
        """Para o agendador"""
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("🔔 Serviço de lembretes parado")

    def is_running(self):
        return self.running and self.scheduler.running

    # ===================== Processamento =====================
    def processar_lembretes(self, agora=None):
        """Um ciclo completo: todos os usuários, todos os lembretes ativos"""
        agora = converter_para_br(agora or self.relogio())
        resultado = ResultadoProcessamento()
        logger.info("🔔 Processando lembretes...")

        try:
            usuarios = self.db.listar_usuarios()
        except Exception as e:
            logger.error(f"❌ Erro ao listar usuários para lembretes: {e}")
            resultado.erro = str(e)
            self.ultimo_resultado = resultado
            return resultado

        for usuario in usuarios:
            self.processar_lembretes_usuario(usuario['id'], agora=agora, resultado=resultado)

        logger.info(
            f"🔔 Processamento concluído: {resultado.enviados} enviados, {resultado.falhas} falhas, "
            f"{resultado.ignorados_duplicados} já enviados hoje"
        )
        self.ultimo_resultado = resultado
        return resultado

    def processar_lembretes_usuario(self, usuario_id, agora=None, resultado=None):
        """Processa os lembretes de um usuário; erros ficam restritos a este usuário"""
        agora = converter_para_br(agora or self.relogio())
        resultado = resultado if resultado is not None else ResultadoProcessamento()

        try:
            lembretes = self.db.listar_lembretes_ativos(usuario_id)
            if not lembretes:
                return resultado

            resultado.usuarios += 1
            contas = self.db.listar_contas_receber_pendentes(usuario_id)

            for lembrete in lembretes:
                self._processar_lembrete(lembrete, contas, usuario_id, agora, resultado)

        except Exception as e:
            logger.error(f"❌ Erro ao processar lembretes do usuário {usuario_id}: {e}")

        return resultado

    def _processar_lembrete(self, lembrete, contas, usuario_id, agora, resultado):
        if not horario_confere(lembrete['horario_gatilho'], agora):
            return

        for conta in contas:
            resultado.avaliados += 1
            if not self._gatilho_da_conta(lembrete, conta, agora):
                continue
            if self.db.existe_log_lembrete_no_dia(lembrete['id'], conta['id'], agora.date()):
                resultado.ignorados_duplicados += 1
                continue

            status = self.enviar_lembrete(lembrete, conta, usuario_id, agora)
            if status == 'sent':
                resultado.enviados += 1
            else:
                resultado.falhas += 1

    def _gatilho_da_conta(self, lembrete, conta, agora):
        return gatilho_atingido(
            lembrete['tipo_gatilho'], lembrete.get('dias_gatilho'),
            para_data(conta['vencimento']), agora.date()
        )

    def deve_enviar_lembrete(self, lembrete, conta, agora=None):
        """Horário, gatilho e ausência de envio no dia"""
        agora = converter_para_br(agora or self.relogio())
        if not horario_confere(lembrete['horario_gatilho'], agora):
            return False
        if not self._gatilho_da_conta(lembrete, conta, agora):
            return False
        return not self.db.existe_log_lembrete_no_dia(lembrete['id'], conta['id'], agora.date())

    def enviar_lembrete(self, lembrete, conta, usuario_id, agora=None):
        """Renderiza, envia e registra o log; retorna 'sent' ou 'failed'"""
        agora = converter_para_br(agora or self.relogio())
        mensagem = self.template_manager.processar_template(lembrete['mensagem_template'], conta, agora.date())

        status = 'sent'
        erro = None
        try:
            envio = self.whatsapp_api.enviar_mensagem(conta.get('cliente_whatsapp'), mensagem, usuario_id=usuario_id)
            if not envio or not envio.get('success'):
                status = 'failed'
                erro = (envio or {}).get('error') or 'Erro ao enviar mensagem'
        except Exception as e:
            status = 'failed'
            erro = str(e) or 'Erro desconhecido'
            logger.error(f"❌ Erro ao enviar lembrete via WhatsApp: {e}")

        try:
            self.db.criar_log_lembrete(
                lembrete_id=lembrete['id'],
                conta_receber_id=conta['id'],
                cliente_id=conta['cliente_id'],
                mensagem=mensagem,
                status=status,
                erro=erro,
                enviado_em=agora if status == 'sent' else None,
                criado_em=agora
            )
        except Exception as e:
            logger.error(f"❌ Erro ao registrar log do lembrete {lembrete['id']} / conta {conta['id']}: {e}")

        if status == 'sent':
            logger.info(f"✅ Lembrete enviado para {conta.get('cliente_nome')}: {conta.get('descricao')}")
        else:
            logger.warning(f"❌ Falha ao enviar lembrete para {conta.get('cliente_nome')}: {erro}")
        return status
