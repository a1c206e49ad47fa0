# Order state machine, webhook verification and partner clients
