"""Multi-vendor (Raritan, APC) SNMP PDU bridge for Home Assistant over MQTT."""
