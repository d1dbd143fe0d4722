# 核心层：就绪探测、租户注册、资源开通、启动协调
