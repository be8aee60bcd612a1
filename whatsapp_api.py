"""
Integração com a Evolution API para WhatsApp
Envio de lembretes de pagamento e avisos de vendas parceladas
"""

import json
import time
import logging
from typing import Dict, Any, Optional
from urllib.parse import urlparse

import requests

from utils import formatar_moeda, formatar_data_br, limpar_telefone

logger = logging.getLogger(__name__)

RODAPE = "_Mensagem automática - Sistema de Gestão Financeira_"


class EvolutionAPI:
    """
    Wrapper mínimo da Evolution API.
    Endpoints usados:
      POST /message/sendText/:instance   { number, text, delay, linkPreview }
      GET  /instance/fetchInstances
    """

    def __init__(self, whatsapp_config, db=None):
        """Inicializa a integração; sem URL/chave/instância o canal fica indisponível"""
        self.db = db
        self.api_key = whatsapp_config.api_key
        self.instance_name = whatsapp_config.instance_name
        self.timeout = whatsapp_config.timeout
        self.max_retries = whatsapp_config.max_retries
        self.retry_delay = whatsapp_config.retry_delay
        self.message_delay = whatsapp_config.message_delay
        self.public_url = whatsapp_config.public_url

        raw = (whatsapp_config.api_url or "").strip()
        if raw and not urlparse(raw).scheme:
            raw = "https://" + raw
        self.base_url = raw.rstrip("/")

        self.configurado = whatsapp_config.validate()
        self.headers = {
            "Content-Type": "application/json",
            "apikey": self.api_key,
        }

        if self.configurado:
            logger.info(f"Evolution API inicializada: {self.base_url} (instância {self.instance_name})")
        else:
            logger.warning("WhatsApp não configurado. Variáveis EVOLUTION_* ausentes.")

    # ---------- HTTP genérico ----------
    def _make_request(self, endpoint: str, method: str = "GET", data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Faz requisição HTTP com retry para erros transitórios"""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        for attempt in range(self.max_retries + 1):
            try:
                if method.upper() == "GET":
                    resp = requests.get(url, headers=self.headers, timeout=self.timeout)
                elif method.upper() == "POST":
                    resp = requests.post(url, headers=self.headers, timeout=self.timeout, json=data)
                else:
                    raise ValueError(f"Método HTTP não suportado: {method}")

                logger.debug(f"[Evolution] {method} {url} -> {resp.status_code}")

                if 200 <= resp.status_code < 300:
                    try:
                        corpo = resp.json()
                    except json.JSONDecodeError:
                        corpo = {"data": resp.text}
                    return {"success": True, "data": corpo}

                if resp.status_code == 401:
                    return {"success": False, "error": "Não autorizado - verifique a API Key"}
                if resp.status_code == 404:
                    return {"success": False, "error": "Instância ou endpoint não encontrado"}
                if resp.status_code == 400:
                    return {"success": False, "error": f"Requisição rejeitada: {resp.text[:200]}"}

                err_msg = resp.text[:200]
                if attempt < self.max_retries:
                    logger.warning(f"[Evolution] Tentativa {attempt+1} falhou: HTTP {resp.status_code}. Retry em {self.retry_delay}s")
                    time.sleep(self.retry_delay)
                    continue
                return {"success": False, "error": err_msg or f"HTTP {resp.status_code}"}

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    logger.warning(f"[Evolution] Conexão falhou (tentativa {attempt+1}): {e}. Retry em {self.retry_delay}s")
                    time.sleep(self.retry_delay)
                    continue
                return {"success": False, "error": "Erro de conexão com a Evolution API"}
            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    logger.warning(f"[Evolution] Timeout (tentativa {attempt+1}). Retry em {self.retry_delay}s")
                    time.sleep(self.retry_delay)
                    continue
                return {"success": False, "error": "Timeout na requisição para a Evolution API"}

        return {"success": False, "error": "Máximo de tentativas excedido"}

    # ---------- Seleção de instância ----------
    def _instancia_usuario(self, usuario_id: Optional[int]) -> str:
        """Instância do usuário (se cadastrada) ou a instância padrão"""
        if usuario_id is None or self.db is None:
            return self.instance_name
        try:
            instancia = self.db.buscar_instancia_whatsapp_ativa(usuario_id)
        except Exception as e:
            logger.warning(f"Falha ao buscar instância do usuário {usuario_id}: {e}")
            return self.instance_name
        if instancia:
            return instancia['nome_instancia']
        return self.instance_name

    # ---------- API: ENVIOS ----------
    def enviar_mensagem(self, telefone: str, mensagem: str, usuario_id: Optional[int] = None) -> Dict[str, Any]:
        """Envia texto via WhatsApp; retorna {'success', 'error', 'message_id'}"""
        if not self.configurado:
            return {"success": False, "error": "WhatsApp não configurado", "message_id": None}

        numero = limpar_telefone(telefone)
        if not numero:
            return {"success": False, "error": "Número de telefone inválido", "message_id": None}

        instancia = self._instancia_usuario(usuario_id)
        payload = {
            "number": numero,
            "text": mensagem,
            "delay": self.message_delay,
            "linkPreview": False,
        }

        resp = self._make_request(f"message/sendText/{instancia}", "POST", payload)
        if resp.get("success"):
            dados = resp.get("data") or {}
            message_id = (dados.get("key") or {}).get("id") if isinstance(dados, dict) else None
            logger.info(f"WhatsApp enviado para {numero} via {instancia}")
            return {"success": True, "error": None, "message_id": message_id}

        logger.error(f"Erro ao enviar WhatsApp para {numero}: {resp.get('error')}")
        return {"success": False, "error": resp.get("error", "Falha no envio"), "message_id": None}

    def testar_conexao(self) -> bool:
        """Verifica se a API responde com as credenciais atuais"""
        if not self.configurado:
            return False
        return bool(self._make_request("instance/fetchInstances", "GET").get("success"))

    # ---------- Mensagens de venda parcelada ----------
    def link_confirmacao(self, token: str) -> str:
        return f"{self.public_url}/confirm-sale/{token}"

    def montar_pedido_confirmacao(self, venda: Dict[str, Any]) -> str:
        return (
            f"Olá {venda.get('cliente_nome', '')}! 📋\n\n"
            f"Confirmação de Venda Parcelada:\n"
            f"📝 {venda['descricao']}\n"
            f"💰 Valor Total: {formatar_moeda(venda['valor_total'])}\n"
            f"📊 Parcelas: {venda['quantidade_parcelas']}x de {formatar_moeda(venda['valor_parcela'])}\n\n"
            f"Para confirmar a venda, acesse o link:\n"
            f"🔗 {self.link_confirmacao(venda['token_confirmacao'])}\n\n"
            f"No link, você poderá enviar a foto do documento como assinatura digital.\n\n"
            f"{RODAPE}"
        )

    def montar_aviso_aprovacao(self, venda: Dict[str, Any]) -> str:
        return (
            f"Olá {venda.get('cliente_nome', '')}! ✅\n\n"
            f"Sua compra parcelada foi aprovada:\n"
            f"📝 {venda['descricao']}\n"
            f"📊 {venda['quantidade_parcelas']}x de {formatar_moeda(venda['valor_parcela'])}\n"
            f"📅 Primeiro vencimento: {formatar_data_br(venda['primeiro_vencimento'])}\n\n"
            f"{RODAPE}"
        )

    def montar_aviso_rejeicao(self, venda: Dict[str, Any]) -> str:
        motivo = venda.get('observacoes') or 'Não informado'
        return (
            f"Olá {venda.get('cliente_nome', '')}! ❌\n\n"
            f"Sua compra parcelada não foi aprovada:\n"
            f"📝 {venda['descricao']}\n"
            f"💬 Motivo: {motivo}\n\n"
            f"Entre em contato para mais informações.\n\n"
            f"{RODAPE}"
        )
