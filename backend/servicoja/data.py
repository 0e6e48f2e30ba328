"""Demo catalogue used to seed an empty marketplace database."""

DEMO_PASSWORD = "123456"
SEED_RANDOM_STATE = 42

ADMIN_USER = {"name": "Administrador ServiçoJá", "email": "admin@servicoja.ao", "city": "Luanda"}

CATEGORIES = [
    {"name": "Reparos Domésticos", "icon": "tool", "description": "Eletricista, canalizador, carpinteiro e mais"},
    {"name": "Limpeza", "icon": "home", "description": "Limpeza residencial e comercial"},
    {"name": "Aulas Particulares", "icon": "book-open", "description": "Professores de todas as matérias"},
    {"name": "Beleza e Estética", "icon": "scissors", "description": "Cabeleireiros, manicures, maquiadores"},
    {"name": "Tecnologia", "icon": "monitor", "description": "Suporte técnico, desenvolvimento, redes"},
    {"name": "Construção", "icon": "hard-hat", "description": "Pedreiros, pintores, azulejistas"},
    {"name": "Jardinagem", "icon": "sun", "description": "Paisagismo e manutenção de jardins"},
    {"name": "Transporte", "icon": "truck", "description": "Mudanças e entregas"},
]

CITIES = [
    "Luanda",
    "Benguela",
    "Huambo",
    "Lobito",
    "Cabinda",
    "Lubango",
    "Malanje",
    "Namibe",
    "Soyo",
    "Uíge",
]

PROVIDERS = [
    ("João Manuel", "Luanda"),
    ("Maria Santos", "Luanda"),
    ("Pedro Domingos", "Benguela"),
    ("Ana Cristina", "Huambo"),
    ("Carlos Eduardo", "Luanda"),
    ("Fernanda Silva", "Lobito"),
    ("António José", "Cabinda"),
    ("Rosa Maria", "Lubango"),
    ("Miguel Fernandes", "Luanda"),
    ("Beatriz Costa", "Malanje"),
    ("Ricardo Oliveira", "Luanda"),
    ("Sandra Pereira", "Namibe"),
    ("Paulo André", "Benguela"),
    ("Catarina Lopes", "Luanda"),
    ("Francisco Nunes", "Soyo"),
    ("Teresa Alves", "Huambo"),
    ("Luís Alberto", "Luanda"),
    ("Margarida Costa", "Uíge"),
    ("Joaquim Pereira", "Luanda"),
    ("Helena Fernandes", "Benguela"),
]

PROVIDER_DESCRIPTIONS = [
    "Profissional experiente com mais de 10 anos no mercado. Qualidade garantida.",
    "Trabalho com dedicação e pontualidade. Orçamento grátis!",
    "Especialista certificado. Atendimento rápido em toda a região.",
    "Serviço de qualidade a preços justos. Consulte nossas promoções.",
    "Profissional de confiança. Milhares de clientes satisfeitos.",
    "Atendimento personalizado para cada cliente. Ligue agora!",
    "Experiência internacional. Melhores técnicas do mercado.",
    "Comprometimento total com a satisfação do cliente.",
    "Profissional formado e certificado. Garantia de serviço.",
    "Atendemos residências e empresas. Consulte disponibilidade.",
]

REVIEW_COMMENTS = [
    "Excelente profissional! Muito recomendado.",
    "Trabalho impecável, voltarei a contratar.",
    "Pontual e eficiente. Ótimo atendimento.",
    "Serviço de qualidade. Preço justo.",
    "Muito satisfeito com o resultado.",
    "Profissional dedicado e atencioso.",
    "Recomendo a todos! Trabalho perfeito.",
    "Ótima experiência. Profissional nota 10.",
    "Serviço rápido e bem feito.",
    "Excelente custo-benefício.",
]

CLIENTS = [
    ("Cliente Teste 1", "cliente1@teste.com"),
    ("Cliente Teste 2", "cliente2@teste.com"),
    ("Cliente Teste 3", "cliente3@teste.com"),
    ("Cliente Teste 4", "cliente4@teste.com"),
    ("Cliente Teste 5", "cliente5@teste.com"),
]
